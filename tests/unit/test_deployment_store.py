from __future__ import annotations

import pytest

from deployfix.errors import InvalidTransition
from deployfix.models import ErrorType, FixStatus
from deployfix.store.deployments import ALLOWED_TRANSITIONS, can_transition


def test_insert_is_deduplicated_on_platform_deployment_id(services, subscription) -> None:
    sid = subscription["subscription"].id
    first = services.deployments.insert_if_absent(subscription_id=sid, platform_deployment_id="dpl_1")
    second = services.deployments.insert_if_absent(subscription_id=sid, platform_deployment_id="dpl_1")
    assert first is not None
    assert second is None
    assert services.deployments.count_for_platform_id("dpl_1") == 1
    d = services.deployments.require(first)
    assert d.fix_status == FixStatus.pending
    assert d.fix_attempt_number == 0


def test_forward_transitions_and_field_updates(services, subscription) -> None:
    fid = services.deployments.insert_if_absent(
        subscription_id=subscription["subscription"].id, platform_deployment_id="dpl_1"
    )
    services.deployments.transition(fid, FixStatus.analyzing)
    d = services.deployments.transition(
        fid, FixStatus.analyzing, error_type=ErrorType.type_error, error_message="boom"
    )
    assert d.error_type == ErrorType.type_error
    services.deployments.transition(fid, FixStatus.fixing, task_id="t1")
    d = services.deployments.transition(fid, FixStatus.pr_created, pr_url="u", pr_number=3)
    assert (d.fix_status, d.task_id, d.pr_number) == (FixStatus.pr_created, "t1", 3)


def test_backward_transition_rejected(services, subscription) -> None:
    fid = services.deployments.insert_if_absent(
        subscription_id=subscription["subscription"].id, platform_deployment_id="dpl_1"
    )
    services.deployments.transition(fid, FixStatus.analyzing)
    services.deployments.transition(fid, FixStatus.failed)
    with pytest.raises(InvalidTransition):
        services.deployments.transition(fid, FixStatus.analyzing)
    with pytest.raises(InvalidTransition):
        # retry goes through reset_for_retry only
        services.deployments.transition(fid, FixStatus.pending)


def test_unknown_fields_rejected(services, subscription) -> None:
    fid = services.deployments.insert_if_absent(
        subscription_id=subscription["subscription"].id, platform_deployment_id="dpl_1"
    )
    with pytest.raises(ValueError):
        services.deployments.transition(fid, FixStatus.analyzing, fix_status="merged")


def test_terminal_states_have_no_exits_except_merge() -> None:
    for s in (FixStatus.failed, FixStatus.skipped, FixStatus.merged):
        assert ALLOWED_TRANSITIONS[s] == frozenset()
    assert can_transition(FixStatus.pr_created, FixStatus.merged)
    assert not can_transition(FixStatus.pr_created, FixStatus.failed)


def test_record_error_only_touches_in_flight_records(services, subscription) -> None:
    fid = services.deployments.insert_if_absent(
        subscription_id=subscription["subscription"].id, platform_deployment_id="dpl_1"
    )
    assert services.deployments.record_error(fid, "try 1 failed")
    assert services.deployments.require(fid).error_message == "try 1 failed"
    services.deployments.transition(fid, FixStatus.failed, error_message="final")
    assert not services.deployments.record_error(fid, "late")
    assert services.deployments.require(fid).error_message == "final"


def test_reset_for_retry_increments_attempt(services, subscription) -> None:
    fid = services.deployments.insert_if_absent(
        subscription_id=subscription["subscription"].id, platform_deployment_id="dpl_1"
    )
    services.deployments.transition(fid, FixStatus.failed, error_message="x")
    with services.db.transaction() as con:
        attempt = services.deployments.reset_for_retry(con, fid)
    d = services.deployments.require(fid)
    assert attempt == 1
    assert d.fix_status == FixStatus.pending
    assert d.fix_attempt_number == 1
    assert d.error_message is None
