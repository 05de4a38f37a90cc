import pytest

from gatepass.infra import timings


@pytest.fixture(autouse=True)
def clean():
    timings.reset()
    yield
    timings.reset()


@pytest.mark.asyncio
async def test_timeit_records_one_sample_per_use():
    for _ in range(3):
        async with timings.timeit("ledger.test"):
            pass

    (agg,) = timings.aggregates()
    assert agg["kind"] == "ledger.test"
    assert agg["n"] == 3
    assert agg["max"] >= agg["mean"] >= 0.0


@pytest.mark.asyncio
async def test_timeit_records_even_when_body_raises():
    with pytest.raises(ValueError):
        async with timings.timeit("boom"):
            raise ValueError("x")
    assert timings.aggregates()[0]["n"] == 1


def test_aggregates_sorted_by_kind():
    timings.record_timing("b", 2.0)
    timings.record_timing("a", 1.0)
    timings.record_timing("a", 3.0)

    aggs = timings.aggregates()
    assert [a["kind"] for a in aggs] == ["a", "b"]
    assert aggs[0]["mean"] == 2.0
    assert aggs[0]["std"] == pytest.approx(1.4142135, rel=1e-6)
    assert aggs[1]["std"] == 0.0
