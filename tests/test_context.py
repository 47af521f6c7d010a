#!/usr/bin/env python3
"""Tests for lifecycle/context.py - stages and persisted state."""

import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from errors import DriverError
from lifecycle.autopilot import AutopilotParameters
from lifecycle.context import (
    Context,
    ScheduleOptions,
    Stage,
    StageError,
    load_context,
    save_context,
    state_path,
)
from resources import Resource, ResourceKind
from templates import AppTemplate


def _ctx(**kwargs):
    return Context(uid='run1', app=AppTemplate(key='mysql'), **kwargs)


class TestStages:
    """Test stage transitions."""

    def test_id_and_namespace(self):
        ctx = _ctx()
        assert ctx.id == 'mysql-run1'
        assert ctx.namespace == 'mysql-run1'

    def test_happy_path(self):
        ctx = _ctx()
        for stage in (Stage.MATERIALIZING, Stage.VALIDATING, Stage.RUNNING, Stage.RESIZING,
                      Stage.VALIDATING, Stage.RUNNING, Stage.DESTROYING, Stage.LEAK_CHECKING,
                      Stage.TERMINATED):
            ctx.move_to(stage)
        assert ctx.is_alive is False

    def test_illegal_transition(self):
        ctx = _ctx()
        with pytest.raises(StageError, match='created to running'):
            ctx.move_to(Stage.RUNNING)

    def test_terminated_is_final(self):
        ctx = _ctx(stage=Stage.TERMINATED)
        with pytest.raises(StageError):
            ctx.move_to(Stage.MATERIALIZING)

    def test_stage_error_is_driver_error(self):
        ctx = _ctx(stage=Stage.TERMINATED)
        with pytest.raises(DriverError) as exc_info:
            ctx.move_to(Stage.VALIDATING)
        assert exc_info.value.kind == 'StageError'
        assert exc_info.value.app == 'mysql-run1'
        assert exc_info.value.retryable is False

    @pytest.mark.parametrize('stage', [Stage.DESTROYING, Stage.LEAK_CHECKING])
    def test_destroy_can_be_retried(self, stage):
        ctx = _ctx(stage=stage)
        ctx.move_to(Stage.DESTROYING)
        ctx.move_to(Stage.LEAK_CHECKING)
        ctx.move_to(Stage.TERMINATED)
        assert ctx.stage == Stage.TERMINATED

    def test_transition_success_moves_to_done(self):
        ctx = _ctx(stage=Stage.MATERIALIZING, last_error='old failure')
        with ctx.transition(Stage.VALIDATING, done=Stage.RUNNING):
            assert ctx.stage == Stage.VALIDATING
        assert ctx.stage == Stage.RUNNING
        assert ctx.last_error is None

    def test_transition_failure_reverts_and_records(self):
        ctx = _ctx(stage=Stage.RUNNING)
        with pytest.raises(RuntimeError):
            with ctx.transition(Stage.RESIZING):
                raise RuntimeError('disk full')
        assert ctx.stage == Stage.RUNNING
        assert ctx.last_error == 'disk full'


class TestPersistence:
    """Test save_context / load_context."""

    def test_round_trip(self, tmp_path):
        pvc = Resource.build(ResourceKind.PVC, 'data', 'mysql-run1')
        ctx = _ctx(
            options=ScheduleOptions(app_keys=['mysql'], scale_factor=2,
                                    autopilot=AutopilotParameters(name='grow')),
            resources=[pvc],
            stage=Stage.RUNNING,
        )
        path = save_context(ctx, tmp_path / 'ctx.json')
        loaded = load_context('mysql-run1', path)

        assert loaded.id == 'mysql-run1'
        assert loaded.stage == Stage.RUNNING
        assert loaded.options.scale_factor == 2
        assert loaded.options.autopilot.name == 'grow'
        assert loaded.resources[0].ref == 'PersistentVolumeClaim mysql-run1/data'

    def test_saved_json_shape(self, tmp_path):
        path = save_context(_ctx(), tmp_path / 'ctx.json')
        data = json.loads(path.read_text())
        assert data['id'] == 'mysql-run1'
        assert data['stage'] == 'created'

    def test_default_state_path(self):
        path = state_path('mysql-run1')
        assert path.parts[-3:] == ('.states', 'mysql-run1', 'context.json')

    def test_missing_state(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_context('nope', tmp_path / 'nope.json')
