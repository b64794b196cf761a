from orderflow.settings import SettingsCache, SettingsSnapshot, load_snapshot


class TestSnapshot:
    def test_defaults_when_rows_missing(self):
        s = SettingsSnapshot.from_rows({})
        assert s.points_earn_rate == 1000
        assert s.points_per_amount == 100_000
        assert s.cashback_percent == 5.0
        assert s.min_topup == 50_000

    def test_malformed_value_falls_back(self):
        s = SettingsSnapshot.from_rows({"min_topup_amount": "lots"})
        assert s.min_topup == 50_000

    def test_zero_is_kept(self):
        s = SettingsSnapshot.from_rows({
            "reseller_cashback_rate": {"percent": 0},
            "points_earn_rate": {"rate": 0, "per_amount": 100_000},
        })
        assert s.cashback_percent == 0.0
        assert s.points_earn_rate == 0

    def test_bad_field_falls_back_alone(self):
        s = SettingsSnapshot.from_rows({
            "min_topup_amount": {"amount": "lots"},
            "points_earn_rate": {"rate": 50, "per_amount": None},
            "reseller_cashback_rate": {"percent": -3},
        })
        assert s.min_topup == 50_000
        assert s.points_earn_rate == 50
        assert s.points_per_amount == 100_000
        assert s.cashback_percent == 5.0

    async def test_loaded_from_table(self, db, add_setting):
        await add_setting("reseller_cashback_rate", {"percent": 7.5})
        await add_setting("points_earn_rate", {"rate": 50,
                                               "per_amount": 10_000})
        s = await load_snapshot(db)
        assert s.cashback_percent == 7.5
        assert s.points_earn_rate == 50
        assert s.points_per_amount == 10_000


class TestCache:
    async def test_bounded_refresh(self, database, add_setting):
        cache = SettingsCache(database, refresh_seconds=3600)
        first = await cache.get()
        await add_setting("min_topup_amount", {"amount": 10_000})
        # within the refresh window the old snapshot is served
        assert (await cache.get()) is first
        cache.invalidate()
        assert (await cache.get()).min_topup == 10_000

    async def test_malformed_row_does_not_break_reads(self, database,
                                                      add_setting):
        await add_setting("min_topup_amount", {"amount": "lots"})
        await add_setting("reseller_cashback_rate", {"percent": 0})
        s = await SettingsCache(database).get()
        assert s.min_topup == 50_000
        assert s.cashback_percent == 0.0
