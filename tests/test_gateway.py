from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from control.errors import (
    ConflictError,
    InvalidCommandError,
    NotFoundError,
    TransientError,
    UnauthorizedError,
    UnreachableError,
)
from domain.models import Call, Presence, Relocation, SwitchboardCall, Transfer


def _json(request: httpx.Request) -> dict:
    return json.loads(request.content.decode())


@pytest.mark.anyio
async def test_make_call_sends_token_and_tracks_provisional_call(gateway, calld, registry):
    calld.on("POST", "/users/me/calls", (201, {"call_id": "c1"}))

    call = await gateway.make_call("1001", line_id=3)

    assert call == Call(id="c1", status="ringing", direction="outbound", extension="1001", line_id=3)
    assert registry.get(Call, "c1") == call
    request = calld.requests[0]
    assert request.headers["X-Auth-Token"] == "token-123"
    assert _json(request) == {"from_mobile": False, "extension": "1001", "line_id": 3}


@pytest.mark.anyio
async def test_make_call_all_lines_wins_over_line_id(gateway, calld):
    calld.on("POST", "/users/me/calls", (201, {"call_id": "c1"}))

    call = await gateway.make_call("1001", from_mobile=True, line_id=3, all_lines=True)

    assert _json(calld.requests[0]) == {"from_mobile": True, "extension": "1001", "all_lines": True}
    assert call.line_id is None


@pytest.mark.anyio
async def test_relocate_with_line_and_contact_is_rejected_before_sending(gateway, calld):
    with pytest.raises(InvalidCommandError):
        await gateway.relocate_call("c1", "line", line_id=2, contact="sip:alice@pbx")

    assert calld.requests == []


@pytest.mark.anyio
async def test_relocate_call_builds_location_and_tracks_relocation(gateway, calld, registry):
    calld.on(
        "POST",
        "/users/me/relocates",
        (200, {"uuid": "r1", "initiator_call": "c1", "relocated_call": "c2", "completions": ["answer"]}),
    )

    relocation = await gateway.relocate_call("c1", "line", line_id=2)

    assert _json(calld.requests[0]) == {
        "completions": ["answer"],
        "destination": "line",
        "initiator_call": "c1",
        "auto_answer": True,
        "location": {"line_id": 2},
    }
    assert relocation.id == "r1"
    assert relocation.line_id == 2
    assert relocation.contact is None
    assert relocation.status == "initiated"
    assert registry.get(Relocation, "r1") == relocation


@pytest.mark.anyio
async def test_second_relocation_while_one_is_active_conflicts(gateway, calld, registry):
    registry.upsert(Relocation(id="r1", initiator_call="c1", status="answered"))

    with pytest.raises(ConflictError):
        await gateway.relocate_call("c1", "mobile")

    assert calld.requests == []


@pytest.mark.anyio
async def test_relocation_after_completed_predecessor_is_allowed(gateway, calld, registry):
    registry.upsert(Relocation(id="r1", initiator_call="c1", status="completed"))
    calld.on("POST", "/users/me/relocates", (200, {"uuid": "r2", "initiator_call": "c1"}))

    relocation = await gateway.relocate_call("c1", "mobile")

    assert relocation.id == "r2"


@pytest.mark.anyio
async def test_cancel_call_twice_succeeds_both_times(gateway, calld, registry):
    registry.upsert(Call(id="c1", status="talking"))
    calld.on("DELETE", "/users/me/calls/c1", (204, None), (404, {"message": "No such call"}))

    first = await gateway.cancel_call("c1")
    second = await gateway.cancel_call("c1")

    assert first.status == "ended"
    assert second.status == "ended"
    assert registry.get(Call, "c1") is None
    assert registry.retired(Call, "c1").status == "ended"


@pytest.mark.anyio
async def test_transient_switchboard_hold_leaves_entry_unchanged(gateway, calld, registry):
    queued = SwitchboardCall(id="q1", switchboard_id="sb1", queue="queued", caller_id_number="555")
    registry.upsert(queued)
    calld.on("PUT", "/switchboards/sb1/calls/held/q1", (503, {"message": "Service unavailable"}))

    with pytest.raises(TransientError) as excinfo:
        await gateway.hold_switchboard_call("sb1", "q1")

    assert excinfo.value.retryable is True
    assert excinfo.value.status_code == 503
    assert registry.get(SwitchboardCall, "q1") == queued


@pytest.mark.anyio
async def test_hold_switchboard_call_moves_call_to_held(gateway, calld, registry):
    registry.upsert(SwitchboardCall(id="q1", switchboard_id="sb1", queue="queued", caller_id_number="555"))
    calld.on("PUT", "/switchboards/sb1/calls/held/q1", (204, None))

    held = await gateway.hold_switchboard_call("sb1", "q1")

    assert held.queue == "held"
    assert held.caller_id_number == "555"


@pytest.mark.anyio
async def test_answer_queued_switchboard_call_passes_line_and_records_operator_call(gateway, calld, registry):
    registry.upsert(SwitchboardCall(id="q1", switchboard_id="sb1", queue="queued"))
    calld.on("PUT", "/switchboards/sb1/calls/queued/q1/answer", (200, {"call_id": "op-1"}))

    answered = await gateway.answer_switchboard_queued_call("sb1", "q1", line_id=7)

    assert calld.requests[0].url.params["line_id"] == "7"
    assert answered.status == "answered"
    assert answered.answered_by_call == "op-1"
    assert registry.get(SwitchboardCall, "q1").status == "answered"


@pytest.mark.anyio
async def test_unauthorized_does_not_touch_registry(gateway, calld, registry):
    registry.upsert(Call(id="c1", status="talking"))
    calld.on("PUT", "/users/me/calls/c1/hold/start", (401, {"message": "Unauthorized", "error_id": "invalid-token"}))

    with pytest.raises(UnauthorizedError) as excinfo:
        await gateway.hold_call("c1")

    assert excinfo.value.error_id == "invalid-token"
    assert registry.get(Call, "c1").status == "talking"


@pytest.mark.anyio
async def test_not_found_forgets_the_target(gateway, calld, registry):
    registry.upsert(Call(id="c1", status="talking"))
    calld.on("PUT", "/users/me/calls/c1/mute/start", (404, {"message": "No such call"}))

    with pytest.raises(NotFoundError):
        await gateway.mute("c1")

    assert registry.get(Call, "c1") is None


@pytest.mark.anyio
async def test_transport_failure_is_unreachable(gateway, calld, registry):
    calld.on("PUT", "/users/me/calls/c1/answer", httpx.ConnectError("connection refused"))

    with pytest.raises(UnreachableError) as excinfo:
        await gateway.answer_call("c1")

    assert excinfo.value.retryable is True
    assert registry.get(Call, "c1") is None


@pytest.mark.anyio
async def test_transfer_rejects_unknown_flow(gateway, calld):
    with pytest.raises(InvalidCommandError):
        await gateway.transfer_call("c1", "1002", "consultative")
    assert calld.requests == []


@pytest.mark.anyio
async def test_transfer_then_confirm_retires_transfer(gateway, calld, registry, context):
    calld.on(
        "POST",
        "/users/me/transfers",
        (201, {"id": "t1", "initiator_call": "c1", "transferred_call": "c0", "status": "starting", "flow": "attended"}),
    )
    calld.on("PUT", "/users/me/transfers/t1/complete", (204, None))

    transfer = await gateway.transfer_call("c1", "1002")
    assert transfer.status == "initiated"
    assert transfer.exten == "1002"
    assert _json(calld.requests[0]) == {"initiator_call": "c1", "exten": "1002", "flow": "attended"}

    with pytest.raises(ConflictError):
        await gateway.transfer_call("c1", "1003", "blind")

    completed = await gateway.confirm_transfer("t1")
    assert completed.status == "completed"
    assert registry.get(Transfer, "t1") is None


@pytest.mark.anyio
async def test_cancel_transfer_is_idempotent(gateway, calld, registry):
    calld.on("DELETE", "/users/me/transfers/t1", (404, {"message": "No such transfer"}))

    cancelled = await gateway.cancel_transfer("t1")

    assert cancelled.status == "cancelled"
    assert registry.get(Transfer, "t1") is None


@pytest.mark.anyio
async def test_responses_for_one_call_apply_in_issue_order(gateway, calld, registry):
    registry.upsert(Call(id="c1", status="talking"))
    release_hold = asyncio.Event()

    async def slow_hold(request):
        await release_hold.wait()
        return 204, None

    calld.on("PUT", "/users/me/calls/c1/hold/start", slow_hold)
    calld.on("PUT", "/users/me/calls/c1/hold/stop", (204, None))

    hold = asyncio.create_task(gateway.hold_call("c1"))
    await asyncio.sleep(0)
    await gateway.resume_call("c1")
    release_hold.set()
    await hold

    assert registry.get(Call, "c1").status == "talking"


@pytest.mark.anyio
async def test_abandoned_command_still_reaches_registry(gateway, calld, registry):
    release = asyncio.Event()

    async def slow_create(request):
        await release.wait()
        return 201, {"call_id": "c9"}

    calld.on("POST", "/users/me/calls", slow_create)

    caller = asyncio.create_task(gateway.make_call("1001"))
    await asyncio.sleep(0.01)
    caller.cancel()
    with pytest.raises(asyncio.CancelledError):
        await caller

    release.set()
    await gateway.wait_idle()

    assert registry.get(Call, "c9").status == "ringing"


@pytest.mark.anyio
async def test_list_calls_syncs_registry(gateway, calld, registry):
    registry.upsert(Call(id="gone", status="talking"))
    registry.retire(Call, "old", {"status": "ended"})
    calld.on(
        "GET",
        "/users/me/calls",
        (
            200,
            {
                "items": [
                    {"call_id": "c1", "status": "Up", "is_caller": False, "peer_caller_id_number": "1002"},
                    {"call_id": "c2", "status": "Ringing", "on_hold": False, "is_caller": True},
                ]
            },
        ),
    )

    calls = await gateway.list_calls()

    assert {call.id for call in calls} == {"c1", "c2"}
    assert registry.get(Call, "gone") is None
    assert registry.get(Call, "c1").direction == "inbound"
    assert registry.get(Call, "c1").status == "talking"
    assert registry.retired(Call, "old") is None


@pytest.mark.anyio
async def test_fetch_held_calls_only_prunes_its_own_queue(gateway, calld, registry):
    registry.upsert(SwitchboardCall(id="q1", switchboard_id="sb1", queue="queued"))
    registry.upsert(SwitchboardCall(id="h-old", switchboard_id="sb1", queue="held"))
    calld.on("GET", "/switchboards/sb1/calls/held", (200, {"items": [{"id": "h1", "caller_id_name": "Bob"}]}))

    held = await gateway.fetch_switchboard_held_calls("sb1")

    assert [call.id for call in held] == ["h1"]
    assert registry.get(SwitchboardCall, "h-old") is None
    assert registry.get(SwitchboardCall, "q1") is not None
    assert registry.get(SwitchboardCall, "h1").caller_id_name == "Bob"


@pytest.mark.anyio
async def test_update_presence_tracks_own_presence(gateway, calld, registry):
    calld.on("PUT", "/users/me/presences", (204, None))

    presence = await gateway.update_presence("away")

    assert _json(calld.requests[0]) == {"presence": "away"}
    assert presence == Presence(id="user-1", subject="user", status="away")
    assert registry.get(Presence, "user-1").status == "away"


@pytest.mark.anyio
async def test_get_line_status_tracks_line_presence(gateway, calld, registry):
    calld.on("GET", "/lines/line-9/presences", (200, {"line_id": 9, "presence": "ringing"}))

    presence = await gateway.get_line_status("line-9")

    assert presence.subject == "line"
    assert registry.get(Presence, "line-9").status == "ringing"


@pytest.mark.anyio
async def test_blank_identifiers_are_rejected(gateway, calld):
    with pytest.raises(InvalidCommandError):
        await gateway.cancel_call(" ")
    with pytest.raises(InvalidCommandError):
        await gateway.make_call("")
    assert calld.requests == []


@pytest.mark.anyio
async def test_cancel_call_rejected_after_hangup_still_succeeds(gateway, calld, registry):
    registry.upsert(Call(id="c1", status="talking"))
    calld.on("DELETE", "/users/me/calls/c1", (204, None), (409, {"message": "call already hung up"}))

    await gateway.cancel_call("c1")
    again = await gateway.cancel_call("c1")

    assert again.status == "ended"
    assert registry.get(Call, "c1") is None


@pytest.mark.anyio
async def test_cancel_call_conflict_on_live_call_is_raised(gateway, calld, registry):
    registry.upsert(Call(id="c1", status="talking"))
    calld.on("DELETE", "/users/me/calls/c1", (409, {"message": "call is being transferred"}))

    with pytest.raises(ConflictError):
        await gateway.cancel_call("c1")

    assert registry.get(Call, "c1").status == "talking"


@pytest.mark.anyio
async def test_relocate_with_unexpected_location_body_is_transient(gateway, calld, registry):
    calld.on("POST", "/users/me/relocates", (200, {"uuid": "r1", "location": "line"}))

    with pytest.raises(TransientError):
        await gateway.relocate_call("c1", "line", line_id=2)

    assert registry.get(Relocation, "r1") is None


@pytest.mark.anyio
async def test_answered_switchboard_calls_leave_with_next_listing(gateway, calld, registry):
    registry.upsert(SwitchboardCall(id="q1", switchboard_id="sb1", queue="queued"))
    registry.upsert(SwitchboardCall(id="other", switchboard_id="sb2", queue="queued", status="answered"))
    calld.on("PUT", "/switchboards/sb1/calls/queued/q1/answer", (200, {"call_id": "op1"}))
    calld.on("GET", "/switchboards/sb1/calls/held", (200, {"items": []}))

    await gateway.answer_switchboard_queued_call("sb1", "q1")
    await gateway.fetch_switchboard_held_calls("sb1")

    assert registry.get(SwitchboardCall, "q1") is None
    assert registry.get(SwitchboardCall, "other") is not None


@pytest.mark.anyio
async def test_command_bookkeeping_is_released_with_the_entities(gateway, calld, registry):
    for index in range(50):
        calld.on("DELETE", f"/users/me/calls/c{index}", (204, None))
        await gateway.cancel_call(f"c{index}")
    assert registry.tracked_commands == 50

    calld.on("GET", "/users/me/calls", (200, {"items": []}))
    await gateway.list_calls()

    assert registry.tracked_commands == 0
