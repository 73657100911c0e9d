"""Tests for orchestration/plan_builder.py.

Tests for change-set planning: action rules, replacement encoding and
ordering guarantees.
"""

import pytest
from sitelayer.core.errors import CycleError
from sitelayer.orchestration.graph import DependencyGraph, build
from sitelayer.orchestration.plan_builder import ChangeAction, Phase, Plan, PlanBuilder
from sitelayer.resources import parse
from sitelayer.state.models import ResourceStatus, StateRecord


def document(bucket_name="a", *, bucket_lifecycle=None, tags=None, extra=()):
    bucket = {
        "kind": "storage_bucket",
        "name": "a",
        "attributes": {"name": bucket_name, "tags": tags or {}},
    }
    if bucket_lifecycle:
        bucket["lifecycle"] = bucket_lifecycle
    return parse(
        {
            "resources": [
                bucket,
                {
                    "kind": "bucket_policy",
                    "name": "b",
                    "attributes": {"bucket": "${storage_bucket.a.id}", "policy": {}},
                },
                {
                    "kind": "certificate",
                    "name": "c",
                    "attributes": {"domain_name": "c.example.com"},
                    "depends_on": ["bucket_policy.b"],
                },
                *extra,
            ]
        }
    )


def converged(desired, **overrides):
    """State as it would be right after applying ``desired``."""
    state = {}
    for descriptor in desired:
        state[descriptor.address] = StateRecord(
            address=descriptor.address,
            kind=descriptor.kind.value,
            last_applied_attributes=descriptor.plain_attributes(),
            outputs={"arn": f"arn:{descriptor.address}"},
            provider_id=f"id-{descriptor.name}",
            status=ResourceStatus.ready,
            dependencies=sorted(descriptor.dependencies),
        )
    for address, changes in overrides.items():
        state[address] = state[address].evolve(**changes)
    return state


DISTRIBUTION = {
    "kind": "cdn_distribution",
    "name": "d",
    "attributes": {
        "origin_domain": "a.s3.amazonaws.com",
        "certificate_arn": "${certificate.c.arn}",
    },
}


def make_plan(desired, state) -> Plan:
    return PlanBuilder().build(desired.descriptors, build(desired.descriptors), state)


def actions(plan):
    return {entry.key: entry.action for entry in plan}


class TestActionRules:
    """Tests for per-address action decisions."""

    def test_first_plan_creates_in_dependency_order(self):
        plan = make_plan(document(), {})
        assert plan.keys == ["storage_bucket.a", "bucket_policy.b", "certificate.c"]
        assert all(entry.action is ChangeAction.create for entry in plan)
        assert plan.entry("bucket_policy.b").depends_on == ("storage_bucket.a",)

    def test_converged_plan_is_all_noop(self):
        desired = document()
        plan = make_plan(desired, converged(desired))
        assert [entry.action for entry in plan] == [ChangeAction.noop] * 3
        assert not plan.has_changes
        assert plan.summary() == {"noop": 3}

    def test_mutable_attribute_change_is_update(self):
        state = converged(document())
        plan = make_plan(document(tags={"team": "web"}), state)
        entry = plan.entry("storage_bucket.a")
        assert entry.action is ChangeAction.update
        assert entry.reason == "tags changed"
        assert actions(plan)["bucket_policy.b"] is ChangeAction.noop

    def test_tainted_is_replaced(self):
        desired = document()
        state = converged(desired, **{"certificate.c": {"status": ResourceStatus.tainted}})
        plan = make_plan(desired, state)
        assert plan.entry("certificate.c").action is ChangeAction.replace
        assert plan.entry("certificate.c/destroy").reason == "tainted"

    def test_interrupted_create_without_id_is_created(self):
        desired = document()
        state = converged(
            desired,
            **{"certificate.c": {"status": ResourceStatus.creating, "provider_id": None}},
        )
        assert make_plan(desired, state).entry("certificate.c").action is ChangeAction.create

    def test_interrupted_wait_resumes_with_update(self):
        desired = document()
        state = converged(desired, **{"certificate.c": {"status": ResourceStatus.creating}})
        entry = make_plan(desired, state).entry("certificate.c")
        assert entry.action is ChangeAction.update
        assert entry.reason == "resume readiness wait"
        assert entry.resume is True

    def test_interrupted_wait_with_new_attributes_is_full_update(self):
        state = converged(document(), **{"storage_bucket.a": {"status": ResourceStatus.creating}})
        entry = make_plan(document(tags={"team": "web"}), state).entry("storage_bucket.a")
        assert entry.action is ChangeAction.update
        assert entry.reason == "tags changed"
        assert entry.resume is False

    def test_interrupted_destroy_is_replaced(self):
        desired = document()
        state = converged(desired, **{"certificate.c": {"status": ResourceStatus.destroying}})
        assert make_plan(desired, state).entry("certificate.c").action is ChangeAction.replace

    def test_dependency_change_is_update(self):
        desired = document()
        state = converged(desired, **{"certificate.c": {"dependencies": []}})
        entry = make_plan(desired, state).entry("certificate.c")
        assert entry.action is ChangeAction.update
        assert entry.reason == "dependencies changed"

    def test_reference_to_replaced_resource_updates_dependent(self):
        distribution = {
            "kind": "cdn_distribution",
            "name": "d",
            "attributes": {"origin_domain": "${storage_bucket.a.regional_domain_name}"},
        }
        state = converged(document(extra=[distribution]))
        plan = make_plan(document("renamed", extra=[distribution]), state)
        entry = plan.entry("cdn_distribution.d")
        assert entry.action is ChangeAction.update
        assert "storage_bucket.a which is being replaced" in entry.reason

    def test_reference_that_moved_in_an_earlier_apply_updates_dependent(self):
        desired = document(extra=[DISTRIBUTION])
        state = converged(
            desired,
            **{
                "cdn_distribution.d": {
                    "resolved_attributes": {
                        "origin_domain": "a.s3.amazonaws.com",
                        "certificate_arn": "arn:certificate.c:previous",
                    }
                }
            },
        )
        entry = make_plan(desired, state).entry("cdn_distribution.d")
        assert entry.action is ChangeAction.update
        assert entry.reason == "references certificate.c which now resolves to a different value"

    def test_reference_resolving_to_the_applied_value_is_noop(self):
        desired = document(extra=[DISTRIBUTION])
        state = converged(
            desired,
            **{
                "cdn_distribution.d": {
                    "resolved_attributes": {
                        "origin_domain": "a.s3.amazonaws.com",
                        "certificate_arn": "arn:certificate.c",
                    }
                }
            },
        )
        assert make_plan(desired, state).entry("cdn_distribution.d").action is ChangeAction.noop


class TestReplaceOrdering:
    """Tests for destroy-then-create and create-before-destroy ordering."""

    def test_destroy_before_create_by_default(self):
        state = converged(document())
        plan = make_plan(document("renamed"), state)

        assert plan.entry("storage_bucket.a").action is ChangeAction.replace
        destroy = plan.entry("storage_bucket.a/destroy")
        assert destroy.phase is Phase.destroy
        assert destroy.provider_id == "id-a"
        # The policy references the bucket id, which is force-new
        assert plan.entry("bucket_policy.b").action is ChangeAction.replace

        assert plan.keys == [
            "bucket_policy.b/destroy",
            "storage_bucket.a/destroy",
            "storage_bucket.a",
            "bucket_policy.b",
            "certificate.c",
        ]
        assert plan.summary() == {"replace": 2, "noop": 1}

    def test_create_before_destroy(self):
        lifecycle = {"create_before_destroy": True}
        state = converged(document(bucket_lifecycle=lifecycle))
        plan = make_plan(document("renamed", bucket_lifecycle=lifecycle), state)

        created = plan.index("storage_bucket.a")
        destroyed = plan.index("storage_bucket.a/destroy")
        assert created < destroyed
        # Dependents move to the replacement before the original goes away
        assert plan.index("bucket_policy.b") < destroyed
        assert plan.entry("storage_bucket.a/destroy").create_before_destroy is True

    def test_create_before_destroy_propagates_to_replaced_dependencies(self):
        policy_first = parse(
            {
                "resources": [
                    {"kind": "storage_bucket", "name": "a", "attributes": {"name": "a"}},
                    {
                        "kind": "bucket_policy",
                        "name": "b",
                        "attributes": {"bucket": "${storage_bucket.a.id}", "policy": {}},
                        "lifecycle": {"create_before_destroy": True},
                    },
                ]
            }
        )
        renamed = parse(
            {
                "resources": [
                    {"kind": "storage_bucket", "name": "a", "attributes": {"name": "a2"}},
                    {
                        "kind": "bucket_policy",
                        "name": "b",
                        "attributes": {"bucket": "${storage_bucket.a.id}", "policy": {}},
                        "lifecycle": {"create_before_destroy": True},
                    },
                ]
            }
        )
        plan = make_plan(renamed, converged(policy_first))
        assert plan.entry("storage_bucket.a").create_before_destroy is True
        assert plan.index("storage_bucket.a") < plan.index("storage_bucket.a/destroy")
        assert plan.index("bucket_policy.b/destroy") < plan.index("storage_bucket.a/destroy")


class TestDestroyOrdering:
    """Tests for orphan and deposed cleanup."""

    def test_orphans_destroyed_in_reverse_dependency_order(self):
        state = converged(document())
        empty = parse({"resources": []})
        plan = make_plan(empty, state)
        assert plan.keys == [
            "certificate.c/destroy",
            "bucket_policy.b/destroy",
            "storage_bucket.a/destroy",
        ]
        assert all(entry.action is ChangeAction.destroy for entry in plan)
        assert plan.summary() == {"destroy": 3}

    def test_deposed_original_outlives_replacement_and_dependents(self):
        desired = document()
        state = converged(
            desired,
            **{"storage_bucket.a": {"deposed_id": "old-bucket", "status": ResourceStatus.creating}},
        )
        plan = make_plan(desired, state)
        entry = plan.entry("storage_bucket.a/deposed")
        assert entry.action is ChangeAction.destroy
        assert entry.provider_id == "old-bucket"
        assert entry.deposed is True
        assert set(entry.depends_on) == {"storage_bucket.a", "bucket_policy.b"}
        assert plan.entry("storage_bucket.a").resume is True
        assert "storage_bucket.a/deposed" not in plan.entry("storage_bucket.a").depends_on
        assert plan.index("bucket_policy.b") < plan.index("storage_bucket.a/deposed")

    def test_deposed_object_cleaned_up_first_when_replaced_again(self):
        state = converged(document(), **{"storage_bucket.a": {"deposed_id": "old-bucket"}})
        plan = make_plan(document("renamed"), state)
        deposed = plan.index("storage_bucket.a/deposed")
        assert deposed < plan.index("storage_bucket.a/destroy")
        assert deposed < plan.index("storage_bucket.a")
        assert "storage_bucket.a" not in plan.entry("storage_bucket.a/deposed").depends_on


class TestPlanProperties:
    """Tests for plan-wide guarantees."""

    def test_every_entry_follows_its_dependencies(self):
        state = converged(document(bucket_lifecycle={"create_before_destroy": True}))
        plan = make_plan(document("renamed"), state)
        for index, entry in enumerate(plan):
            for dep in entry.depends_on:
                assert plan.index(dep) < index

    def test_cycle_produces_no_plan(self):
        desired = document()
        graph = DependencyGraph(
            {"storage_bucket.a": ["certificate.c"], "bucket_policy.b": ["storage_bucket.a"],
             "certificate.c": ["bucket_policy.b"]},
            {d.address: d for d in desired},
        )
        with pytest.raises(CycleError):
            PlanBuilder().build(desired.descriptors, graph, {})

    def test_describe(self):
        plan = make_plan(document("renamed"), converged(document()))
        assert plan.entry("storage_bucket.a").describe() == "replace (create replacement)"
        assert plan.entry("storage_bucket.a/destroy").describe() == "replace (destroy original)"
