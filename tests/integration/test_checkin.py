"""Gate check-in: exactly-once admission on the SQL and Redis stores."""

import asyncio

import pytest

from gatepass.checkin import ALREADY_USED, OK, CheckInService
from gatepass.errors import MalformedSerial, SerialNotFound, StoreUnavailable
from gatepass.model.redemption import RedemptionRecord
from gatepass.model.redemption._redis import (
    ALL_INDEX, RedemptionStore as RedisRedemptionStore, k_gate,
)

from fakes import FakeRedis


@pytest.fixture
def service(ledger, redemptions):
    return CheckInService(
        ledger=ledger,
        redemptions=redemptions,
        default_venue="Hall A",
        receipt_base_url="https://tickets.example.com",
        event={"name": "Test Fest", "venue": "Hall A", "time": "8:00 PM"},
    )


@pytest.mark.asyncio
async def test_malformed_serial(service):
    with pytest.raises(MalformedSerial):
        await service.check_in("AB", gate="north", staff_id="s1")


@pytest.mark.asyncio
async def test_unknown_serial(service, issued):
    await issued(["ABCDEF"])
    with pytest.raises(SerialNotFound):
        await service.check_in("ZZZZZZ", gate="north", staff_id="s1")


@pytest.mark.asyncio
async def test_first_scan_admits(service, issued):
    purchase = await issued(["ABCDEF", "GHJKLM"])

    result = await service.check_in(" abc-def ", gate="north",
                                    staff_id="s1", ip="10.0.0.7")

    assert result.outcome == OK
    body = result.to_dict()
    assert body["success"] is True
    assert body["serial"] == "ABCDEF"
    assert body["gate"] == "north"
    assert body["usedBy"] == "s1"
    assert body["venue"] == "Hall A"
    assert body["attendee"] == {
        "name": "Guest 1",
        "email": "guest1@example.com",
        "ticketName": "Couple Pass",
    }
    assert body["payment"]["paymentReference"] == purchase["paymentReference"]
    assert body["payment"]["amountPaid"] == 13000.0


@pytest.mark.asyncio
async def test_second_scan_reports_first_usage(service, issued):
    await issued(["ABCDEF"])

    first = await service.check_in("ABCDEF", gate="north", staff_id="s1")
    second = await service.check_in("ABCDEF", gate="south", staff_id="s2",
                                    venue="Annex")

    assert second.outcome == ALREADY_USED
    body = second.to_dict()
    assert body["success"] is False
    assert body["alreadyUsed"] is True
    assert body["usedAt"] == first.to_dict()["usedAt"]
    assert body["gate"] == "north"
    assert body["usedBy"] == "s1"
    assert body["venue"] == "Hall A"


@pytest.mark.asyncio
async def test_sibling_serials_are_independent(service, issued):
    await issued(["ABCDEF", "GHJKLM"])

    await service.check_in("ABCDEF", gate="north", staff_id="s1")
    other = await service.check_in("GHJKLM", gate="north", staff_id="s1")

    assert other.outcome == OK


@pytest.mark.asyncio
async def test_concurrent_scans_admit_exactly_once(service, issued):
    await issued(["ABCDEF"])

    results = await asyncio.gather(*(
        service.check_in("ABCDEF", gate=f"gate-{i}", staff_id=f"s{i}")
        for i in range(10)
    ))

    winners = [r for r in results if r.outcome == OK]
    assert len(winners) == 1
    usage = winners[0].record.usage()
    for r in results:
        assert r.record.usage() == usage


@pytest.mark.asyncio
async def test_lookup_shows_redemption(service, issued):
    await issued(["ABCDEF"], reference="ref-look")

    before = await service.lookup("abcdef")
    assert before["success"] is True
    assert before["attendee"]["serial"] == "ABCDEF"
    assert before["ticket"] == {"name": "Couple Pass", "price": 13000.0,
                                "seats": 1}
    assert before["redeemed"] is None
    assert "serial=ABCDEF" in before["receiptUrl"]
    assert "ref=ref-look" in before["receiptUrl"]

    await service.check_in("ABCDEF", gate="north", staff_id="s1")
    after = await service.lookup("ABCDEF")
    assert after["redeemed"]["gate"] == "north"


@pytest.mark.asyncio
async def test_list_recent_filters_by_gate(service, issued, redemptions):
    await issued(["ABCDEF", "GHJKLM", "NPQRST"])
    await service.check_in("ABCDEF", gate="north", staff_id="s1")
    await service.check_in("GHJKLM", gate="south", staff_id="s2")
    await service.check_in("NPQRST", gate="north", staff_id="s1")

    north = await redemptions.list_recent(gate="north")
    assert [r.serial for r in north] == ["NPQRST", "ABCDEF"]
    assert len(await redemptions.list_recent()) == 3


# ---
# Redis store
# ---
def _record(serial="ABCDEF", gate="north", used_at=1_700_000_000.0):
    return RedemptionRecord(
        serial=serial, used_at=used_at, used_by="s1", gate=gate,
        venue="Hall A", purchase_id="p1",
        attendee={"name": "Ada", "email": "", "ticketName": "GA"},
        payment={"paymentReference": "ref-1",
                 "transactionReference": "tx-1", "amountPaid": 7000.0},
    )


@pytest.mark.asyncio
async def test_redis_claim_is_exactly_once():
    store = RedisRedemptionStore(r=FakeRedis())

    outcomes = await asyncio.gather(*(
        store.claim(_record(gate=f"gate-{i}", used_at=1_700_000_000.0 + i))
        for i in range(10)
    ))

    won = [rec for ok, rec in outcomes if ok]
    assert len(won) == 1
    assert {rec.gate for _, rec in outcomes} == {won[0].gate}


@pytest.mark.asyncio
async def test_redis_claim_indexes_winner():
    r = FakeRedis()
    store = RedisRedemptionStore(r=r)

    await store.claim(_record("ABCDEF", "north", 1.0))
    await store.claim(_record("GHJKLM", "south", 2.0))

    assert set(r.zsets[ALL_INDEX]) == {"ABCDEF", "GHJKLM"}
    assert set(r.zsets[k_gate("north")]) == {"ABCDEF"}
    recent = await store.list_recent()
    assert [rec.serial for rec in recent] == ["GHJKLM", "ABCDEF"]
    assert recent[1].attendee["name"] == "Ada"


@pytest.mark.asyncio
async def test_redis_down_fails_closed():
    store = RedisRedemptionStore(r=FakeRedis(down=True))
    with pytest.raises(StoreUnavailable):
        await store.claim(_record())


@pytest.mark.asyncio
async def test_redis_index_failure_keeps_the_claim():
    r = FakeRedis(fail_pipeline=True)
    store = RedisRedemptionStore(r=r)

    won, _ = await store.claim(_record())
    assert won
    again, existing = await store.claim(_record(gate="south"))
    assert not again
    assert existing.gate == "north"


@pytest.mark.asyncio
async def test_checkin_over_redis_store(ledger, issued):
    await issued(["ABCDEF"])
    service = CheckInService(
        ledger=ledger, redemptions=RedisRedemptionStore(r=FakeRedis()),
    )

    first = await service.check_in("ABCDEF", gate="north", staff_id="s1")
    second = await service.check_in("ABCDEF", gate="south", staff_id="s2")

    assert first.outcome == OK
    assert second.outcome == ALREADY_USED
    assert second.record.gate == "north"
