"""
Tests for notification payload builders, watcher derivation and dispatch.
"""

from approval_engines.state_machine import get_progress, record_vote
from approval_kernel.domain.ports import NotificationPayload, NotificationType
from approval_services.notifications import (
    NullNotificationService,
    RecordingNotificationService,
    build_approval_cancelled,
    build_approval_complete,
    build_approval_expiring,
    build_approval_requested,
    build_vote_recorded,
    dispatch,
    exclude,
    get_watchers,
)
from tests.conftest import T0, make_instance


def payload(*recipients, notification_type=NotificationType.VOTE_RECORDED):
    return NotificationPayload(
        notification_type=notification_type,
        recipients=recipients,
        approval_id="apr-1",
        subject="s",
        body="b",
    )


class TestWatchers:
    """Who hears about an approval."""

    def test_initiator_then_approvers_deduplicated(self):
        instance = make_instance(("mgr", "dir"), ("dir", "cfo"), initiator_id="alice")
        assert get_watchers(instance) == ("alice", "mgr", "dir", "cfo")

    def test_initiator_who_is_also_approver_listed_once(self):
        instance = make_instance(("alice", "mgr"), initiator_id="alice")
        assert get_watchers(instance) == ("alice", "mgr")

    def test_exclude(self):
        assert exclude(("a", "b", "c"), "b", "z") == ("a", "c")


class TestBuilders:
    """Payload text and metadata."""

    def test_requested(self):
        instance = make_instance(("mgr",))
        built = build_approval_requested(instance, "Stage 1", ("mgr",), "https://x")
        assert built.subject == "Approval requested: Stage 1"
        assert built.body == 'Your approval is needed for stage "Stage 1".'
        assert built.metadata == {"requested_by": "alice", "stage_name": "Stage 1"}

    def test_vote_recorded_phrasing(self):
        instance = make_instance(("mgr", "dir"))
        voted = record_vote(instance, "mgr", "request_changes", now=T0).value
        vote = voted.stages[0].vote_of("mgr")

        built = build_vote_recorded(voted, vote, get_progress(voted), ("alice",))

        assert built.body == "mgr requested changes on the approval."
        assert built.metadata["decision"] == "request_changes"
        assert built.metadata["total_stages"] == 1

    def test_complete_approved(self):
        voted = record_vote(make_instance(("mgr",)), "mgr", "approve", now=T0).value
        built = build_approval_complete(voted, ("alice", "mgr"))
        assert built.subject == "Approval approved"
        assert built.body == "The approval has been approved."
        assert built.metadata["final_status"] == "approved"

    def test_cancelled_without_reason(self):
        built = build_approval_cancelled(make_instance(("mgr",)), ("mgr",), "alice")
        assert built.body == "The approval was cancelled by alice."

    def test_expiring_without_deadline(self):
        built = build_approval_expiring(make_instance(("mgr",)), ("mgr",))
        assert built.metadata["expires_at"] == "soon"


class TestDispatch:
    """Best-effort delivery."""

    def test_sends_to_recording_service(self):
        service = RecordingNotificationService()
        sent = dispatch(service, [payload("a", "b")])
        assert sent == service.sent
        assert service.received_by("a") == sent

    def test_opted_out_recipients_filtered(self):
        service = RecordingNotificationService(opt_outs={"b": [NotificationType.VOTE_RECORDED]})
        dispatch(service, [
            payload("a", "b"),
            payload("b", notification_type=NotificationType.APPROVAL_COMPLETE),
        ])

        assert service.sent[0].recipients == ("a",)
        assert service.of_type(NotificationType.APPROVAL_COMPLETE)[0].recipients == ("b",)

    def test_payload_with_no_recipients_left_is_dropped(self):
        service = RecordingNotificationService(opt_outs={"a": []})
        assert dispatch(service, [payload("a")]) == []
        assert service.sent == []

    def test_failure_is_logged_not_raised(self, captured_logs):
        service = RecordingNotificationService(fail_with=ConnectionError("broker unreachable"))

        assert dispatch(service, [payload("a")]) == []

        record = next(r for r in captured_logs() if r["message"] == "notification_failed")
        assert record["error_type"] == "ConnectionError"
        assert record["level"] == "WARNING"

    def test_null_service(self):
        assert dispatch(NullNotificationService(), [payload("a")]) == [payload("a")]

    def test_clear(self):
        service = RecordingNotificationService()
        dispatch(service, [payload("a")])
        service.clear()
        assert service.sent == []
