import pytest

from orderflow.infra import timings


class TestTimeit:
    async def test_records_calls_and_errors(self):
        async with timings.timeit("gateway.query_status"):
            pass
        with pytest.raises(RuntimeError):
            async with timings.timeit("gateway.query_status"):
                raise RuntimeError("down")

        [rec] = timings.aggregates()
        assert rec["kind"] == "gateway.query_status"
        assert rec["calls"] == 2
        assert rec["errors"] == 1
        assert rec["p95"] >= rec["mean"] >= 0.0

    def test_samples_bounded(self):
        for _ in range(timings.MAX_SAMPLES + 10):
            timings.record_timing("webhook.post", 0.001)
        [rec] = timings.aggregates()
        assert rec["calls"] == timings.MAX_SAMPLES + 10
        assert rec["std"] == 0.0