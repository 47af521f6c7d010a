#!/usr/bin/env python3
"""Tests for lifecycle/destroyer.py - teardown and leak detection."""

import sys
import time
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from errors import DestroyFailure
from lifecycle.context import Context, DestroyOptions, Stage
from lifecycle.destroyer import Destroyer, volume_dir
from nodes import NodeCommandError
from resources import Resource, ResourceKind
from store import StoreError
from templates import AppTemplate

NS = 'app-run1'
PODS_ROOT = '/var/lib/kubelet/pods'


def _app(store):
    """Namespace, storage, a deployment with two pods and a service."""
    ns = store.put(Resource.build(ResourceKind.NAMESPACE, NS))
    sc = store.put(Resource.build(ResourceKind.STORAGE_CLASS, 'fast'))
    pvc = store.put(Resource.build(ResourceKind.PVC, 'data', NS))
    dep = store.put(Resource.build(ResourceKind.DEPLOYMENT, 'web', NS,
                                   spec={'selector': {'matchLabels': {'app': 'web'}}}))
    svc = store.put(Resource.build(ResourceKind.SERVICE, 'web', NS))
    store.add_pod('web-0', NS, {'app': 'web'}, node='worker-1')
    store.add_pod('web-1', NS, {'app': 'web'}, node='worker-2')
    return Context(uid='run1', app=AppTemplate(key='app'), resources=[ns, sc, pvc, dep, svc],
                   stage=Stage.RUNNING)


def _cascade(store):
    """Delete a Deployment's pods along with it, like the garbage collector."""
    original = store.delete

    def delete(kind, name, namespace=''):
        original(kind, name, namespace)
        if kind == ResourceKind.DEPLOYMENT:
            for pod in store.list(ResourceKind.POD, namespace, label_selector='app=web'):
                original(ResourceKind.POD, pod.name, namespace)

    store.delete = delete


class TestDestroy:
    """Test Destroyer.destroy."""

    def test_deletes_workloads_keeps_storage_and_namespace(self, store, registry, fast_config):
        ctx = _app(store)
        Destroyer(store, fast_config, registry).destroy(ctx, DestroyOptions())

        assert not store.has(ResourceKind.DEPLOYMENT, 'web', NS)
        assert not store.has(ResourceKind.SERVICE, 'web', NS)
        assert store.has(ResourceKind.PVC, 'data', NS)
        assert store.has(ResourceKind.STORAGE_CLASS, 'fast')
        assert store.has(ResourceKind.NAMESPACE, NS)
        assert ctx.stage == Stage.TERMINATED

    def test_already_absent_is_success(self, store, registry, fast_config):
        ctx = _app(store)
        store.delete(ResourceKind.SERVICE, 'web', NS)
        Destroyer(store, fast_config, registry).destroy(ctx, DestroyOptions())
        assert ctx.stage == Stage.TERMINATED

    def test_wait_for_destroy_waits_for_pods(self, store, registry, fast_config):
        """Pods outliving their Deployment fail the wait."""
        ctx = _app(store)
        with pytest.raises(DestroyFailure, match='2 pod\\(s\\) remain'):
            Destroyer(store, fast_config, registry).destroy(ctx, DestroyOptions(wait_for_destroy=True))
        assert ctx.stage == Stage.RUNNING

    def test_wait_for_destroy_success(self, store, registry, fast_config):
        ctx = _app(store)
        _cascade(store)
        Destroyer(store, fast_config, registry).destroy(ctx, DestroyOptions(wait_for_destroy=True))
        assert ctx.stage == Stage.TERMINATED

    def test_delete_error_aborts_without_leak_check(self, store, registry, fast_config):
        ctx = _app(store)
        store.failures[('delete', ResourceKind.DEPLOYMENT)] = StoreError('forbidden', status=403)

        with pytest.raises(DestroyFailure, match='forbidden'):
            Destroyer(store, fast_config, registry).destroy(ctx, DestroyOptions())

        assert store.has(ResourceKind.SERVICE, 'web', NS)
        assert ctx.stage == Stage.RUNNING
        assert 'forbidden' in ctx.last_error

    def test_delete_error_tolerated_with_leak_check(self, store, registry, node_driver, fast_config):
        """With a leak check requested, later resources are still deleted."""
        ctx = _app(store)
        store.failures[('delete', ResourceKind.DEPLOYMENT)] = StoreError('forbidden', status=403)

        with pytest.raises(DestroyFailure, match='Deployment app-run1/web still present'):
            Destroyer(store, fast_config, registry, node_driver).destroy(
                ctx, DestroyOptions(wait_for_resource_leak_cleanup=True))

        assert not store.has(ResourceKind.SERVICE, 'web', NS)

    def test_phase_order(self, store, registry, fast_config):
        """Core resources go first, backups last."""
        ctx = _app(store)
        ctx.resources.insert(0, store.put(Resource.build(ResourceKind.APPLICATION_BACKUP, 'bk', NS)))
        ctx.resources.append(store.put(Resource.build(ResourceKind.MIGRATION, 'mig', NS)))

        Destroyer(store, fast_config, registry).destroy(ctx, DestroyOptions())

        order = [d.split(' ')[0] for d in store.deleted]
        assert order == ['Deployment', 'Service', 'Migration', 'ApplicationBackup']


class TestLeakCheck:
    """Test volume-directory leak detection."""

    def test_clean_nodes_terminate(self, store, registry, node_driver, fast_config):
        ctx = _app(store)
        _cascade(store)
        Destroyer(store, fast_config, registry, node_driver).destroy(
            ctx, DestroyOptions(wait_for_resource_leak_cleanup=True))

        assert ctx.stage == Stage.TERMINATED
        checked = {(node, path) for _, node, path in node_driver.calls}
        assert {node for node, _ in checked} == {'worker-1', 'worker-2'}
        assert len(checked) == 4

    def test_leak_never_cleaned_fails_within_timeout(self, store, registry, node_driver, fast_config):
        ctx = _app(store)
        _cascade(store)
        leaked = store.get(ResourceKind.POD, 'web-1', NS)
        path = volume_dir(PODS_ROOT, leaked.uid)
        node_driver.files[('worker-2', path)] = [path]

        start = time.monotonic()
        with pytest.raises(DestroyFailure) as exc_info:
            Destroyer(store, fast_config, registry, node_driver).destroy(
                ctx, DestroyOptions(wait_for_resource_leak_cleanup=True))

        assert time.monotonic() - start < 2
        message = str(exc_info.value)
        assert 'web-1' in message
        assert 'worker-2' in message
        assert ctx.stage == Stage.DESTROYING

    def test_destroy_retried_after_leak_failure(self, store, registry, node_driver, fast_config):
        ctx = _app(store)
        _cascade(store)
        leaked = store.get(ResourceKind.POD, 'web-1', NS)
        path = volume_dir(PODS_ROOT, leaked.uid)
        node_driver.files[('worker-2', path)] = [path]
        destroyer = Destroyer(store, fast_config, registry, node_driver)
        opts = DestroyOptions(wait_for_resource_leak_cleanup=True)

        with pytest.raises(DestroyFailure):
            destroyer.destroy(ctx, opts)
        assert ctx.stage == Stage.DESTROYING

        del node_driver.files[('worker-2', path)]
        destroyer.destroy(ctx, opts)

        assert ctx.stage == Stage.TERMINATED
        assert ctx.last_error is None

    def test_node_command_errors_are_retried_until_timeout(self, store, registry, node_driver, fast_config):
        ctx = _app(store)
        _cascade(store)
        node_driver.error = NodeCommandError('ssh: connect timed out')

        with pytest.raises(DestroyFailure, match='ssh: connect timed out'):
            Destroyer(store, fast_config, registry, node_driver).destroy(
                ctx, DestroyOptions(wait_for_resource_leak_cleanup=True))
        assert len(node_driver.calls) > 1

    def test_requires_node_driver(self, store, registry, fast_config):
        ctx = _app(store)
        _cascade(store)
        with pytest.raises(DestroyFailure, match='no node driver'):
            Destroyer(store, fast_config, registry).destroy(
                ctx, DestroyOptions(wait_for_resource_leak_cleanup=True))

    def test_volume_dir(self):
        assert volume_dir('/var/lib/kubelet/pods/', 'abc') == '/var/lib/kubelet/pods/abc/volumes'


class TestDeleteTasks:
    """Test Destroyer.delete_tasks."""

    def test_deletes_pods(self, store, registry, fast_config):
        ctx = _app(store)
        deleted = Destroyer(store, fast_config, registry).delete_tasks(ctx)
        assert sorted(p.name for p in deleted) == ['web-0', 'web-1']
        assert store.list(ResourceKind.POD, NS) == []

    def test_recreated_pod_counts_as_deleted(self, store, registry, fast_config):
        """A replacement pod with the same name but a new uid is not waited on."""
        ctx = _app(store)
        original = store.delete

        def recreate(kind, name, namespace=''):
            original(kind, name, namespace)
            if kind == ResourceKind.POD:
                store.add_pod(name, namespace, {'app': 'web'})

        store.delete = recreate
        Destroyer(store, fast_config, registry).delete_tasks(ctx)
        assert len(store.list(ResourceKind.POD, NS)) == 2

    def test_stuck_pod_fails(self, store, registry, fast_config):
        ctx = _app(store)
        store.sticky.add(ResourceKind.POD)
        with pytest.raises(DestroyFailure, match='still terminating'):
            Destroyer(store, fast_config, registry).delete_tasks(ctx)
