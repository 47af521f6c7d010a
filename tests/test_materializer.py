#!/usr/bin/env python3
"""Tests for lifecycle/materializer.py - preparing and creating single resources."""

import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from config import DriverConfig
from errors import ConfigLookupFailure, ScheduleFailure
from lifecycle.autopilot import AUTOPILOT_ENABLED_ANNOTATION, AutopilotParameters
from lifecycle.context import ScheduleOptions
from lifecycle.materializer import (
    AUTH_SECRET_NAME_ANNOTATION,
    AUTH_SECRET_NAMESPACE_ANNOTATION,
    Materializer,
    diverging_fields,
)
from resources import Resource, ResourceKind
from store import StoreError

from conftest import FakeStorageDriver

NS = 'mysql-run1'


def _deployment(replicas=2):
    return Resource.from_manifest({
        'kind': 'Deployment',
        'metadata': {'name': 'web'},
        'spec': {
            'replicas': replicas,
            'selector': {'matchLabels': {'app': 'web'}},
            'template': {'spec': {'volumes': [
                {'name': 'd', 'persistentVolumeClaim': {'claimName': 'data-{{NAMESPACE}}'}}]}},
        },
    })


def _secret_config_map(store, data=None):
    cm = Resource.build(ResourceKind.CONFIG_MAP, 'px-auth', 'default',
                        data=data if data is not None else {'secret_name': 'px-admin',
                                                             'secret_namespace': 'portworx'})
    store.put(cm)


class TestPrepare:
    """Test descriptor preparation."""

    def test_sets_namespace_and_substitutes(self, store):
        m = Materializer(store, DriverConfig())
        obj = m.prepare(_deployment(), NS, 'mysql', ScheduleOptions())
        assert obj.namespace == NS
        claim = obj.spec['template']['spec']['volumes'][0]['persistentVolumeClaim']
        assert claim['claimName'] == f'data-{NS}'

    def test_does_not_mutate_template(self, store):
        m = Materializer(store, DriverConfig())
        dep = _deployment()
        m.prepare(dep, NS, 'mysql', ScheduleOptions(scale_factor=3))
        assert dep.namespace == ''
        assert dep.spec['replicas'] == 2

    def test_scale_factor_multiplies_replicas(self, store):
        m = Materializer(store, DriverConfig())
        obj = m.prepare(_deployment(replicas=2), NS, 'mysql', ScheduleOptions(scale_factor=3))
        assert obj.spec['replicas'] == 6

    def test_storage_class_provisioner_precedence(self, store):
        sc = Resource.build(ResourceKind.STORAGE_CLASS, 'fast', provisioner='placeholder')
        m = Materializer(store, DriverConfig(storage_provisioner='from-config'),
                         storage_driver=FakeStorageDriver('from-driver'))

        assert m.prepare(sc, NS, 'a', ScheduleOptions()).manifest['provisioner'] == 'from-config'
        opts = ScheduleOptions(storage_provisioner='from-options')
        assert m.prepare(sc, NS, 'a', opts).manifest['provisioner'] == 'from-options'

        m = Materializer(store, DriverConfig(), storage_driver=FakeStorageDriver('from-driver'))
        assert m.prepare(sc, NS, 'a', ScheduleOptions()).manifest['provisioner'] == 'from-driver'

    def test_rule_in_kube_system_keeps_namespace(self, store):
        rule = Resource.build(ResourceKind.RULE, 'pre-snap', 'kube-system')
        obj = Materializer(store, DriverConfig()).prepare(rule, NS, 'a', ScheduleOptions())
        assert obj.namespace == 'kube-system'

    def test_security_annotations_on_claims(self, store):
        _secret_config_map(store)
        m = Materializer(store, DriverConfig(secret_config_map='px-auth'))
        pvc = Resource.build(ResourceKind.PVC, 'data')
        obj = m.prepare(pvc, NS, 'mysql', ScheduleOptions())
        assert obj.annotations[AUTH_SECRET_NAME_ANNOTATION] == 'px-admin'
        assert obj.annotations[AUTH_SECRET_NAMESPACE_ANNOTATION] == 'portworx'

    def test_security_annotations_on_statefulset_claim_templates(self, store):
        _secret_config_map(store)
        m = Materializer(store, DriverConfig(secret_config_map='px-auth'))
        ss = Resource.build(ResourceKind.STATEFUL_SET, 'db', spec={
            'volumeClaimTemplates': [{'metadata': {'name': 'data'}}]})
        obj = m.prepare(ss, NS, 'mysql', ScheduleOptions())
        tmpl_annotations = obj.spec['volumeClaimTemplates'][0]['metadata']['annotations']
        assert tmpl_annotations[AUTH_SECRET_NAME_ANNOTATION] == 'px-admin'
        assert AUTH_SECRET_NAME_ANNOTATION not in obj.annotations

    def test_unsecured_kind_gets_no_annotations(self, store):
        _secret_config_map(store)
        m = Materializer(store, DriverConfig(secret_config_map='px-auth'))
        svc = m.prepare(Resource.build(ResourceKind.SERVICE, 'svc'), NS, 'mysql', ScheduleOptions())
        assert svc.annotations == {}

    def test_missing_config_map_key(self, store):
        _secret_config_map(store, data={'secret_name': 'px-admin'})
        m = Materializer(store, DriverConfig(secret_config_map='px-auth'))
        with pytest.raises(ConfigLookupFailure, match='secret_namespace') as exc_info:
            m.prepare(Resource.build(ResourceKind.PVC, 'data'), NS, 'mysql', ScheduleOptions())
        assert exc_info.value.retryable is False

    def test_missing_config_map(self, store):
        m = Materializer(store, DriverConfig(secret_config_map='px-auth'))
        with pytest.raises(ConfigLookupFailure, match='px-auth'):
            m.prepare(Resource.build(ResourceKind.PVC, 'data'), NS, 'mysql', ScheduleOptions())


class TestCreateOrAdopt:
    """Test create-or-adopt semantics."""

    def test_creates(self, store):
        live = Materializer(store, DriverConfig()).materialize(
            Resource.build(ResourceKind.SERVICE, 'svc'), NS, 'mysql', ScheduleOptions())
        assert live.uid
        assert store.has(ResourceKind.SERVICE, 'svc', NS)

    def test_adopts_existing(self, store, caplog):
        existing = store.put(Resource.build(ResourceKind.CONFIG_MAP, 'conf', NS, data={'k': 'old'}))
        m = Materializer(store, DriverConfig())
        with caplog.at_level(logging.WARNING):
            live = m.materialize(Resource.build(ResourceKind.CONFIG_MAP, 'conf', data={'k': 'new'}),
                                 NS, 'mysql', ScheduleOptions())

        assert live.uid == existing.uid
        assert live.manifest['data'] == {'k': 'old'}
        assert 'data.k' in caplog.text

    def test_create_error_becomes_schedule_failure(self, store):
        store.failures[('create', ResourceKind.SERVICE)] = StoreError('quota exceeded', status=403)
        with pytest.raises(ScheduleFailure, match='quota exceeded'):
            Materializer(store, DriverConfig()).materialize(
                Resource.build(ResourceKind.SERVICE, 'svc'), NS, 'mysql', ScheduleOptions())

    def test_ensure_namespace_labels(self, store):
        ns = Materializer(store, DriverConfig()).ensure_namespace(NS, 'mysql')
        assert ns.labels == {'creator': 'kad', 'app': 'mysql'}

    def test_autopilot_claim_binds_rule(self, store):
        pvc = Resource.build(ResourceKind.PVC, 'data')
        pvc.metadata['annotations'] = {AUTOPILOT_ENABLED_ANNOTATION: 'true'}
        pvc.metadata['labels'] = {'app': 'mysql'}
        opts = ScheduleOptions(autopilot=AutopilotParameters(name='grow'))

        Materializer(store, DriverConfig()).materialize(pvc, NS, 'mysql', opts)
        rule = store.get(ResourceKind.AUTOPILOT_RULE, 'grow')
        assert rule.spec['selector']['matchLabels'] == {'app': 'mysql'}


class TestDivergingFields:
    def test_subset_is_not_divergence(self):
        requested = Resource.build(ResourceKind.SERVICE, 's', spec={'ports': [{'port': 80}]})
        live = Resource.build(ResourceKind.SERVICE, 's', spec={'ports': [{'port': 80, 'protocol': 'TCP'}],
                                                                'clusterIP': '10.1.1.1'})
        assert diverging_fields(requested, live) == []

    def test_changed_value(self):
        requested = Resource.build(ResourceKind.DEPLOYMENT, 'd', spec={'replicas': 3})
        live = Resource.build(ResourceKind.DEPLOYMENT, 'd', spec={'replicas': 1})
        assert diverging_fields(requested, live) == ['spec.replicas']
