"""Tests for the provisioning engine: plan loading, runs, destroy and persistence."""

from unittest.mock import patch

import pytest

from tierstack.orchestrator.engine import ProvisioningEngine
from tierstack.orchestrator.reconciler import Reconciler
from tierstack.plan.models import ResourceKind
from tierstack.state.manager import StateManager
from tierstack.state.models import EntryOutcome, ResourceStatus, RunStatus
from tierstack.utils.errors import InvalidPlan

from conftest import network, subnet, three_tier_descriptors


class TestLoadPlan:
    """Engine-level plan validation."""

    def test_loads_valid_plan(self, make_engine, cloud):
        plan = make_engine().load_plan(three_tier_descriptors(), name='shop')

        assert plan.name == 'shop'
        assert len(plan) == len(three_tier_descriptors())
        assert cloud.calls == []

    def test_missing_provisioner_is_a_violation(self, provisioners, tag_manager, cloud):
        provisioners = {
            kind: provisioner for kind, provisioner in provisioners.items()
            if kind != ResourceKind.DATABASE_INSTANCE
        }
        engine = ProvisioningEngine(provisioners, tag_manager)

        with pytest.raises(InvalidPlan) as exc_info:
            engine.load_plan(three_tier_descriptors())

        assert exc_info.value.codes() == ['missing_provisioner']
        assert exc_info.value.violations[0].names == ('db',)
        assert cloud.calls == []

    def test_missing_provisioner_reported_with_other_violations(self, tag_manager):
        engine = ProvisioningEngine({}, tag_manager)

        with pytest.raises(InvalidPlan) as exc_info:
            engine.load_plan([network('v1'), network('v1')])

        assert set(exc_info.value.codes()) == {'duplicate_name', 'missing_provisioner'}


class TestRun:
    """Whole runs against the simulated cloud."""

    def test_successful_run(self, make_engine, three_tier_plan, cloud):
        result = make_engine().run(three_tier_plan)

        assert result.status == RunStatus.COMPLETED
        assert result.is_success()
        assert result.rollback is None
        assert result.leftovers == {}
        assert set(result.identifiers()) == set(three_tier_plan.names())
        assert all(state.status == ResourceStatus.CREATED for state in result.states)
        result.raise_for_status()

    def test_rerun_adopts_everything(self, make_engine, vpc_plan, cloud):
        engine = make_engine()
        first = engine.run(vpc_plan)

        second = engine.run(vpc_plan)

        assert second.status == RunStatus.COMPLETED
        assert second.record.names(EntryOutcome.ADOPTED) == ['v1', 's1', 'sg1']
        assert second.identifiers() == first.identifiers()
        assert len(cloud.names('create')) == 3

    def test_states_follow_authoring_order(self, make_engine):
        engine = make_engine()
        plan = engine.load_plan([subnet('s1'), network('v1')])

        result = engine.run(plan)

        assert [state.name for state in result.states] == ['s1', 'v1']
        assert result.record.names() == ['v1', 's1']

    def test_progress_callback_receives_every_status(self, make_engine, vpc_plan, cloud):
        seen = []
        cloud.fail('create', 'sg1')
        engine = make_engine(progress_callback=lambda name, status, message: seen.append(status))

        engine.run(vpc_plan)

        assert ResourceStatus.FAILED in seen
        assert seen[-1] == ResourceStatus.ROLLED_BACK

    def test_failing_progress_callback_does_not_change_outcome(self, make_engine, vpc_plan, cloud):
        def callback(name, status, message):
            if name == 's1' and status == ResourceStatus.CREATED:
                raise ValueError('display closed')

        result = make_engine(progress_callback=callback).run(vpc_plan)

        assert result.status == RunStatus.COMPLETED
        assert set(result.identifiers()) == {'v1', 's1', 'sg1'}

    def test_missing_provisioner_rejected_before_any_call(self, provisioners, tag_manager, vpc_plan, cloud):
        provisioners = {
            kind: provisioner for kind, provisioner in provisioners.items()
            if kind != ResourceKind.SECURITY_GROUP
        }
        engine = ProvisioningEngine(provisioners, tag_manager)

        with pytest.raises(InvalidPlan) as exc_info:
            engine.run(vpc_plan)

        assert exc_info.value.codes() == ['missing_provisioner']
        assert exc_info.value.violations[0].names == ('sg1',)
        assert cloud.calls == []

    def test_unexpected_error_still_rolls_back(self, make_engine, vpc_plan, cloud):
        original = Reconciler._reconcile_one

        def reconcile_one(reconciler, plan, store, name):
            if name == 's1':
                raise RuntimeError('store went away')
            return original(reconciler, plan, store, name)

        with patch.object(Reconciler, '_reconcile_one', autospec=True, side_effect=reconcile_one):
            result = make_engine().run(vpc_plan)

        assert result.status == RunStatus.ABORTED_CLEAN
        assert 'store went away' in result.error.message
        assert result.rollback.torn_down == ['v1']
        assert cloud.resources == {}


class TestDestroy:
    """Destroy finds resources by natural key and deletes dependents first."""

    def test_destroys_in_reverse_order(self, make_engine, vpc_plan, cloud):
        engine = make_engine()
        engine.run(vpc_plan)

        result = engine.destroy(vpc_plan)

        assert result.torn_down == ['sg1', 's1', 'v1']
        assert result.is_clean()
        assert cloud.resources == {}

    def test_nothing_to_destroy(self, make_engine, vpc_plan, cloud):
        result = make_engine().destroy(vpc_plan)

        assert result.torn_down == []
        assert result.absent == ['v1', 's1', 'sg1']
        # Children of an absent parent are not looked up
        assert cloud.names('find') == ['v1']

    def test_partial_deployment(self, make_engine, vpc_plan, cloud, tag_manager):
        cloud.seed(tag_manager.key_for(vpc_plan['v1']))

        result = make_engine().destroy(vpc_plan)

        assert result.torn_down == ['v1']
        assert result.absent == ['s1', 'sg1']

    def test_failed_lookup_leaves_dependents_unchecked(self, make_engine, vpc_plan, cloud):
        engine = make_engine()
        engine.run(vpc_plan)
        cloud.fail('find', 'v1')

        result = engine.destroy(vpc_plan)

        assert list(result.leftovers) == ['v1', 's1', 'sg1']
        assert result.leftovers['s1'].startswith('not checked')
        assert cloud.names('delete') == []

    def test_failed_delete_does_not_stop_destroy(self, make_engine, vpc_plan, cloud):
        engine = make_engine()
        engine.run(vpc_plan)
        cloud.fail('delete', 'sg1')

        result = engine.destroy(vpc_plan)

        assert result.torn_down == ['s1', 'v1']
        assert list(result.leftovers) == ['sg1']
        assert cloud.resource_for('sg1') is not None

    def test_missing_provisioner_rejected_before_any_lookup(self, provisioners, tag_manager, vpc_plan, cloud):
        provisioners = {
            kind: provisioner for kind, provisioner in provisioners.items()
            if kind != ResourceKind.SUBNET
        }

        with pytest.raises(InvalidPlan) as exc_info:
            ProvisioningEngine(provisioners, tag_manager).destroy(vpc_plan)

        assert exc_info.value.codes() == ['missing_provisioner']
        assert cloud.calls == []


class TestPersistence:
    """Runs are saved through the state manager."""

    def test_run_is_persisted(self, make_engine, vpc_plan, tmp_path):
        manager = StateManager(str(tmp_path / 'state.json'))
        result = make_engine(state_manager=manager).run(vpc_plan)

        snapshot = manager.load()

        assert snapshot.plan_name == 'vpc'
        assert snapshot.operation == 'apply'
        assert snapshot.status == RunStatus.COMPLETED
        assert snapshot.project == 'shop'
        assert snapshot.environment == 'test'
        assert snapshot.identifiers() == result.identifiers()
        assert [entry.name for entry in snapshot.record] == ['v1', 's1', 'sg1']

    def test_aborted_run_is_persisted(self, make_engine, vpc_plan, cloud, tmp_path):
        manager = StateManager(str(tmp_path / 'state.json'))
        cloud.fail('create', 'sg1')

        make_engine(state_manager=manager).run(vpc_plan)

        snapshot = manager.load()
        assert snapshot.status == RunStatus.ABORTED_CLEAN
        assert snapshot.get('sg1').status == ResourceStatus.FAILED
        assert snapshot.get('v1').status == ResourceStatus.ROLLED_BACK

    def test_destroy_is_persisted(self, make_engine, vpc_plan, tmp_path):
        manager = StateManager(str(tmp_path / 'state.json'))
        engine = make_engine(state_manager=manager)
        engine.run(vpc_plan)

        engine.destroy(vpc_plan)

        snapshot = manager.load()
        assert snapshot.operation == 'destroy'
        assert snapshot.status == RunStatus.COMPLETED
        assert all(state.status == ResourceStatus.ROLLED_BACK for state in snapshot.resources)
