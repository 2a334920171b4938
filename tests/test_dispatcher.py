"""
Tests for NudgeDispatcher: validation, rendering and dedupe on enqueue.
"""
import pytest
from unittest.mock import patch

from everly.models import NudgeJob, NudgeLog
from everly.nudges.dispatcher import NudgeDispatcher, validate_dispatch_payload
from everly.nudges import template
from everly.nudges.errors import NudgeValidationError


@pytest.fixture
def dispatcher(store):
    return NudgeDispatcher(store, dedupe_period="week")


def nudge(member_id="mem_1", recipe_name="welcome", message="Hi {{name}}!", **extra):
    return {"member_id": member_id, "recipe_name": recipe_name, "message": message, **extra}


class TestValidateDispatchPayload:

    def test_valid_payload(self):
        request = validate_dispatch_payload({"hub_id": " hub_1 ", "nudges": [nudge(variables={"name": "Ana"})]})
        assert request.hub_id == "hub_1"
        assert request.nudges[0].channel == "stub"
        assert request.nudges[0].variables == {"name": "Ana"}

    def test_unknown_fields_are_ignored(self):
        request = validate_dispatch_payload({"hub_id": "hub_1", "nudges": [nudge(priority="high")], "extra": 1})
        assert len(request.nudges) == 1

    def test_errors_carry_field_locations(self):
        with pytest.raises(NudgeValidationError) as exc_info:
            validate_dispatch_payload({"hub_id": "hub_1", "nudges": [nudge(), {"member_id": "", "message": "x"}]})

        locs = {d["loc"] for d in exc_info.value.details}
        assert "nudges.1.member_id" in locs
        assert "nudges.1.recipe_name" in locs

    def test_nested_variables_rejected(self):
        with pytest.raises(NudgeValidationError):
            validate_dispatch_payload({"hub_id": "hub_1", "nudges": [nudge(variables={"name": {"first": "Ana"}})]})

    def test_not_an_object(self):
        with pytest.raises(NudgeValidationError):
            validate_dispatch_payload(["hub_1"])


class TestDispatch:
    """Tests for NudgeDispatcher.dispatch."""

    def test_renders_and_enqueues(self, dispatcher):
        result = dispatcher.dispatch("hub_1", [nudge(variables={"name": "Ana"})])

        assert result.enqueued == 1
        assert result.skipped == 0
        job = NudgeJob.query.one()
        assert job.message == "Hi Ana!"
        assert job.variables == {"name": "Ana"}
        assert NudgeLog.query.one().message_hash is not None

    def test_same_nudge_three_times_enqueues_once(self, dispatcher):
        result = dispatcher.dispatch("hub_1", [nudge(), nudge(), nudge()])

        assert result.enqueued == 1
        assert result.skipped == 2
        assert [r.reason for r in result.results] == [None, "duplicate", "duplicate"]
        assert NudgeJob.query.count() == 1
        statuses = sorted(log.status for log in NudgeLog.query.all())
        assert statuses == ["queued", "skipped", "skipped"]

    def test_dispatch_again_later_in_same_week_is_skipped(self, dispatcher):
        dispatcher.dispatch("hub_1", [nudge()])
        result = dispatcher.dispatch("hub_1", [nudge(message="Different copy")])

        assert result.enqueued == 0
        assert result.skipped == 1

    def test_distinct_members_are_independent(self, dispatcher):
        result = dispatcher.dispatch("hub_1", [nudge(member_id="a"), nudge(member_id="b")])
        assert result.enqueued == 2

    def test_validation_error_enqueues_nothing(self, dispatcher):
        with pytest.raises(NudgeValidationError):
            dispatcher.dispatch("hub_1", [nudge(), nudge(member_id="")])

        assert NudgeJob.query.count() == 0

    def test_day_period_key(self, store):
        dispatcher = NudgeDispatcher(store, dedupe_period="day")
        with patch("everly.nudges.dispatcher.dedupe_key", wraps=template.dedupe_key) as spy:
            dispatcher.dispatch("hub_1", [nudge()])

        spy.assert_called_once_with("hub_1", "welcome", "mem_1", "day")

    def test_to_dict(self, dispatcher):
        data = dispatcher.dispatch("hub_1", [nudge(), nudge()]).to_dict()
        assert data["enqueued"] == 1
        assert data["skipped"] == 1
        assert data["results"][0]["enqueued"] is True
        assert data["results"][1]["enqueued"] is False
        assert data["results"][1]["reason"] == "duplicate"
        assert data["results"][1]["queue_id"] == data["results"][0]["queue_id"]

    def test_message_whitespace_is_preserved(self, dispatcher):
        dispatcher.dispatch("hub_1", [nudge(message="  Hi {{name}},\n\n", variables={"name": " Ana "})])

        job = NudgeJob.query.one()
        assert job.message == "  Hi  Ana ,\n\n"
        assert job.variables == {"name": " Ana "}

    def test_ids_are_trimmed(self, dispatcher):
        dispatcher.dispatch(" hub_1 ", [nudge(member_id=" mem_1 ", recipe_name=" welcome ")])

        job = NudgeJob.query.one()
        assert (job.hub_id, job.member_id, job.recipe_name) == ("hub_1", "mem_1", "welcome")

    def test_whitespace_only_member_id_rejected(self, dispatcher):
        with pytest.raises(NudgeValidationError):
            dispatcher.dispatch("hub_1", [nudge(member_id="   ")])
