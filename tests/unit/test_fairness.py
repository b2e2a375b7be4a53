import unittest
from datetime import timedelta

from fakes import FakeAlertChannel, FakeStore

from bingeboard.core.config import Settings
from bingeboard.core.metrics import InMemoryMetricsSink
from bingeboard.schemas import FairnessMetrics
from bingeboard.services.fairness import (
    ENGAGEMENT_LOG_METHOD,
    FUSION_LOG_METHOD,
    FairnessAuditor,
    content_age_balance,
    creator_representation,
    demographic_fairness,
    exploration_comfort,
    fairness_grade,
    genre_diversity,
    overall_score,
    parse_time_window,
)
from bingeboard.utils.timezone import utc_now

WIDE_GENRES = ["Drama", "Comedy", "Crime", "Documentary", "Sci-Fi", "Mystery"]


def make_row(user_id="u1", genres=None, creator=None, release_year=None, is_exploration=None, **extra):
    context = {"genres": list(genres or []), "creator": creator}
    if release_year is not None:
        context["release_year"] = release_year
    if is_exploration is not None:
        context["is_exploration"] = is_exploration
    context.update(extra)
    return {"user_id": user_id, "duration_ms": 10, "context": context, "created_at": utc_now()}


def make_engagement(user_id, demographic, engaged):
    return {"user_id": user_id, "duration_ms": 0, "context": {"demographic": demographic, "engaged": engaged},
            "created_at": utc_now()}


def balanced_fusion_rows(creators):
    """One row per creator; genres are wide and the exploration share sits at target."""
    rows = []
    for i, creator in enumerate(creators):
        rows.append(make_row(
            user_id=f"u{i % 2}",
            genres=WIDE_GENRES,
            creator=creator,
            release_year=utc_now().year,
            is_exploration=(i % 5 == 0),
        ))
    return rows


async def seed_logs(store, rows, method=FUSION_LOG_METHOD):
    for row in rows:
        await store.insert_log(method, row["context"], user_id=row["user_id"], duration_ms=row["duration_ms"],
                               created_at=row["created_at"])


class TestParseTimeWindow(unittest.TestCase):
    def test_days_and_hours(self):
        self.assertEqual(parse_time_window("7d"), timedelta(days=7))
        self.assertEqual(parse_time_window("24h"), timedelta(hours=24))
        self.assertEqual(parse_time_window(" 30D "), timedelta(days=30))

    def test_timedelta_passes_through(self):
        self.assertEqual(parse_time_window(timedelta(hours=3)), timedelta(hours=3))

    def test_invalid_windows(self):
        for bad in ("", "7w", "d7", "0d", "-3d"):
            with self.assertRaises(ValueError):
                parse_time_window(bad)
        with self.assertRaises(ValueError):
            parse_time_window(timedelta(0))


class TestMetricFunctions(unittest.TestCase):
    def test_even_genre_spread_is_fully_diverse(self):
        rows = [make_row(genres=["Drama"]), make_row(genres=["Comedy"])]
        gd = genre_diversity(rows)
        self.assertAlmostEqual(gd.diversity_score, 1.0)
        self.assertEqual(gd.average_genres_per_user, 2.0)
        self.assertEqual(gd.genre_distribution, {"Drama": 0.5, "Comedy": 0.5})

    def test_single_genre_has_zero_diversity(self):
        gd = genre_diversity([make_row(genres=["Drama"]), make_row(genres=["Drama"])])
        self.assertEqual(gd.diversity_score, 0.0)

    def test_no_rows_means_zero_metrics(self):
        self.assertEqual(genre_diversity([]).users, 0)
        self.assertEqual(creator_representation([], 0.15).fairness_violations, [])
        self.assertEqual(content_age_balance([], 0.7, 2).sample_size, 0)
        self.assertEqual(exploration_comfort([], 0.8).sample_size, 0)
        self.assertEqual(demographic_fairness([], 0.1).variance_score, 0.0)

    def test_creator_share_above_threshold_is_a_violation(self):
        rows = [make_row(creator="Netflix")] * 4 + [make_row(creator=f"Net{i}") for i in range(6)]
        cr = creator_representation(rows, 0.15)
        self.assertEqual(cr.fairness_violations, ["Netflix"])
        self.assertAlmostEqual(cr.top_creators[0].percentage, 0.4)
        self.assertAlmostEqual(cr.concentration_index, 0.16 + 6 * 0.01)

    def test_content_age_balance(self):
        rows = [make_row(release_year=y) for y in (2026, 2025, 2010, 2024)]
        ab = content_age_balance(rows, 0.7, 2, current_year=2026)
        self.assertAlmostEqual(ab.recent_content, 0.75)
        self.assertAlmostEqual(ab.catalog_content, 0.25)
        self.assertAlmostEqual(ab.balance_score, 0.95)

    def test_exploration_comfort(self):
        rows = [make_row(is_exploration=True)] * 5 + [make_row(is_exploration=False)] * 5
        ec = exploration_comfort(rows, 0.8)
        self.assertAlmostEqual(ec.familiar_content, 0.5)
        self.assertAlmostEqual(ec.exploration_score, 0.7)

    def test_demographic_spread_is_population_std(self):
        rows = [make_engagement("a", "18-24", i < 9) for i in range(10)]
        rows += [make_engagement("b", "55+", i < 1) for i in range(10)]
        df = demographic_fairness(rows, 0.1)
        self.assertAlmostEqual(df.engagement_by_demographic["18-24"], 0.9)
        self.assertAlmostEqual(df.engagement_by_demographic["55+"], 0.1)
        self.assertAlmostEqual(df.variance_score, 0.4)
        self.assertTrue(df.inequity_alerts)

    def test_grades(self):
        self.assertEqual(fairness_grade(95), "EXCELLENT")
        self.assertEqual(fairness_grade(90), "EXCELLENT")
        self.assertEqual(fairness_grade(85), "GOOD")
        self.assertEqual(fairness_grade(72), "FAIR")
        self.assertEqual(fairness_grade(60), "POOR")
        self.assertEqual(fairness_grade(12), "CRITICAL")

    def test_overall_score_halves_creator_factor_on_violation(self):
        rows = [make_row(genres=["Drama"], creator="Netflix", release_year=2026, is_exploration=False)]
        metrics = FairnessMetrics(
            genre_diversity=genre_diversity(rows),
            creator_representation=creator_representation(rows, 0.15),
            content_age_balance=content_age_balance(rows, 0.7, 2, current_year=2026),
            demographic_fairness=demographic_fairness([], 0.1),
            exploration_comfort=exploration_comfort(rows, 0.8),
        )
        # diversity 0, creator 0.5, balance 0.7, exploration 0.8
        self.assertAlmostEqual(overall_score(metrics), 50.0)


class TestFairnessAuditor(unittest.IsolatedAsyncioTestCase):
    def make_auditor(self, store, channel=None):
        self.metrics = InMemoryMetricsSink()
        return FairnessAuditor(store, alert_channel=channel, settings=Settings(), metrics=self.metrics)

    async def test_dominant_creator_raises_one_high_alert(self):
        store = FakeStore()
        await seed_logs(store, balanced_fusion_rows(["Netflix"] * 4 + [f"Studio {i}" for i in range(6)]))
        channel = FakeAlertChannel()

        record = await self.make_auditor(store, channel).audit("7d")

        self.assertEqual([(a.type, a.severity) for a in record.alerts], [("creator_dominance", "high")])
        self.assertIn("Netflix", record.alerts[0].message)
        self.assertEqual(record.alerts[0].affected_users, 2)
        self.assertEqual(len(channel.dispatched), 1)
        self.assertEqual(len(store.bias_alerts), 1)
        self.assertEqual(len(store.audits), 1)

    async def test_narrow_genres_raise_concentration_alert(self):
        store = FakeStore()
        rows = [make_row(user_id=u, genres=["Drama", "Comedy", "Crime"], creator=f"Net{i}")
                for i, u in enumerate(["u1", "u2", "u1", "u2", "u1", "u2", "u1"])]
        await seed_logs(store, rows)
        channel = FakeAlertChannel()

        record = await self.make_auditor(store, channel).audit("7d")

        types = [a.type for a in record.alerts]
        self.assertIn("genre_concentration", types)
        concentration = next(a for a in record.alerts if a.type == "genre_concentration")
        self.assertEqual(concentration.severity, "medium")
        self.assertEqual(concentration.affected_users, 2)
        self.assertIn("3.0 genres per user", concentration.message)
        # medium alerts are recorded but not dispatched
        self.assertEqual(channel.dispatched, [])
        self.assertEqual(store.bias_alerts, [])

    async def test_demographic_inequity_is_dispatched(self):
        store = FakeStore()
        engagement = [make_engagement(f"a{i}", "18-24", i < 9) for i in range(10)]
        engagement += [make_engagement(f"b{i}", "55+", i < 1) for i in range(10)]
        await seed_logs(store, engagement, method=ENGAGEMENT_LOG_METHOD)
        channel = FakeAlertChannel()

        record = await self.make_auditor(store, channel).audit("7d")

        self.assertEqual([a.type for a in record.alerts], ["demographic_inequity"])
        self.assertEqual(record.alerts[0].affected_users, 20)
        self.assertEqual([a.type for a in channel.dispatched], ["demographic_inequity"])

    async def test_exploration_deficit(self):
        store = FakeStore()
        rows = balanced_fusion_rows([f"Net{i}" for i in range(10)])
        for row in rows:
            row["context"]["is_exploration"] = True
        await seed_logs(store, rows)

        record = await self.make_auditor(store).audit("7d")

        self.assertEqual([a.type for a in record.alerts], ["exploration_deficit"])
        self.assertIn("100.0% exploration", record.alerts[0].message)

    async def test_empty_window_raises_no_alerts(self):
        store = FakeStore()
        record = await self.make_auditor(store, FakeAlertChannel()).audit("24h")
        self.assertEqual(record.alerts, [])
        self.assertEqual(record.window_end - record.window_start, timedelta(hours=24))
        self.assertEqual(len(store.audits), 1)

    async def test_rows_outside_the_window_are_ignored(self):
        store = FakeStore()
        old = balanced_fusion_rows(["Netflix"] * 10)
        for row in old:
            row["created_at"] = utc_now() - timedelta(days=10)
        await seed_logs(store, old)

        record = await self.make_auditor(store).audit("7d")
        self.assertEqual(record.alerts, [])
        self.assertEqual(record.metrics.creator_representation.top_creators, [])

    async def test_channel_failure_does_not_abort_audit(self):
        class BrokenChannel:
            async def dispatch(self, alert):
                raise ConnectionError("pubsub down")

        store = FakeStore()
        await seed_logs(store, balanced_fusion_rows(["Netflix"] * 4 + [f"Studio {i}" for i in range(6)]))
        record = await self.make_auditor(store, BrokenChannel()).audit("7d")
        self.assertEqual(len(record.alerts), 1)
        self.assertEqual(len(store.bias_alerts), 1)

    async def test_failed_alert_insert_does_not_block_other_alerts(self):
        store = FakeStore()
        await seed_logs(store, balanced_fusion_rows(["Netflix"] * 4 + [f"Studio {i}" for i in range(6)]))
        engagement = [make_engagement(f"a{i}", "18-24", i < 9) for i in range(10)]
        engagement += [make_engagement(f"b{i}", "55+", i < 1) for i in range(10)]
        await seed_logs(store, engagement, method=ENGAGEMENT_LOG_METHOD)
        store.failing_alert_inserts = 1
        channel = FakeAlertChannel()

        record = await self.make_auditor(store, channel).audit("7d")

        self.assertEqual({a.type for a in record.alerts}, {"creator_dominance", "demographic_inequity"})
        self.assertEqual({a.type for a in channel.dispatched}, {"creator_dominance", "demographic_inequity"})
        self.assertEqual(len(store.bias_alerts), 1)
        self.assertEqual(len(store.audits), 1)

    async def test_report_sections_and_grade(self):
        store = FakeStore()
        await seed_logs(store, balanced_fusion_rows(["Netflix"] * 4 + [f"Studio {i}" for i in range(6)]))

        report = await self.make_auditor(store).generate_report("30d")

        self.assertTrue(report.startswith("# Fairness & Bias Audit Report"))
        self.assertIn("**Time Period**: Last 30d", report)
        for section in ("## Genre Diversity", "## Creator Representation", "## Content Age Balance",
                        "## Exploration vs Comfort", "## Demographic Fairness", "## Overall Fairness Score"):
            self.assertIn(section, report)
        self.assertIn("  - Netflix", report)
        self.assertIn("- **Status**: FAIL", report)
        self.assertIn("- **Status**: PASS", report)
        self.assertIn("[HIGH] creator_dominance", report)
        self.assertTrue(any(grade in report for grade in ("EXCELLENT", "GOOD", "FAIR", "POOR", "CRITICAL")))

    async def test_run_audit_returns_metrics(self):
        store = FakeStore()
        await seed_logs(store, balanced_fusion_rows([f"Net{i}" for i in range(10)]))
        metrics = await self.make_auditor(store).run_audit("7d")
        self.assertEqual(metrics.genre_diversity.users, 2)
        self.assertAlmostEqual(metrics.exploration_comfort.familiar_content, 0.8)


if __name__ == "__main__":
    unittest.main()
