import asyncio
import unittest

from fakes import FakeAvailability, FakeStore

from bingeboard.core.config import Settings
from bingeboard.core.metrics import InMemoryMetricsSink
from bingeboard.errors import CatalogUnavailableError
from bingeboard.schemas import (
    Candidate,
    FusedRecommendation,
    SourceTag,
    StreamingAvailability,
    UserPreferences,
    UserTemporalProfile,
    ViewingHistoryEntry,
)
from bingeboard.services.catalogs.tmdb_client import TmdbShow
from bingeboard.services.catalogs.utelly_client import UtellyResult
from bingeboard.services.catalogs.watchmode_client import WatchmodeTitle
from bingeboard.services.fusion import (
    FUSION_LOG_METHOD,
    FusionEngine,
    creator_of,
    is_exploration,
    merge_candidates,
    rank,
    source_quota,
)
from bingeboard.services.scoring import score_tmdb_show


class FakeTmdb:
    def __init__(self, by_genre=None, similar=None, resolved=None, error=None, delay=0.0):
        self.by_genre = by_genre or {}
        self.similar_to = similar or {}
        self.resolved = resolved or {}
        self.error = error
        self.delay = delay

    async def _maybe_fail(self):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error

    async def discover_by_genre(self, genre_id, page=1):
        await self._maybe_fail()
        return list(self.by_genre.get(genre_id, []))

    async def similar(self, tmdb_id, page=1):
        await self._maybe_fail()
        return list(self.similar_to.get(tmdb_id, []))

    async def resolve_id(self, title):
        return self.resolved.get(title)


class FakeWatchmode:
    def __init__(self, trending=None, by_query=None, error=None):
        self.trending_titles = trending or []
        self.by_query = by_query or {}
        self.error = error

    async def trending(self, kind="tv_series", limit=20):
        if self.error is not None:
            raise self.error
        return list(self.trending_titles)

    async def search(self, query, kind="tv_series"):
        if self.error is not None:
            raise self.error
        return list(self.by_query.get(query, []))


class FakeUtelly:
    def __init__(self, by_term=None, error=None):
        self.by_term = by_term or {}
        self.error = error

    async def search(self, term, country=None):
        if self.error is not None:
            raise self.error
        return list(self.by_term.get(term, []))


def make_settings(**overrides):
    values = dict(fusion_adapter_timeout_seconds=1.0)
    values.update(overrides)
    return Settings(**values)


def make_show(tmdb_id, name=None, genre_ids=(18,), vote=7.0, popularity=50.0, first_air_date="2012-05-01"):
    return TmdbShow(
        id=tmdb_id,
        name=name or f"Show {tmdb_id}",
        genre_ids=list(genre_ids),
        vote_average=vote,
        popularity=popularity,
        first_air_date=first_air_date,
    )


def make_title(watchmode_id, tmdb_id, title=None, rating=6.0, networks=("Netflix",)):
    return WatchmodeTitle(
        id=watchmode_id,
        title=title or f"Title {watchmode_id}",
        tmdb_id=tmdb_id,
        user_rating=rating,
        network_names=list(networks),
        genre_names=["Drama"],
    )


def make_candidate(source, canonical_id, confidence, reason, score=50.0, title="The Lighthouse Keepers"):
    return Candidate(
        source=source,
        external_id=f"{source.value}-{canonical_id}",
        canonical_id=canonical_id,
        title=title,
        confidence=confidence,
        reason=reason,
        score=score,
    )


def make_item(canonical_id, score, source=SourceTag.TMDB, genres=("Drama",), networks=()):
    return FusedRecommendation(
        canonical_id=canonical_id,
        title=f"Item {canonical_id}",
        source=source,
        sources=[source],
        genres=list(genres),
        networks=list(networks),
        personalized_score=score,
    )


DRAMA_FAN = UserPreferences(favorite_genres=["Drama"], demographic="18-24")


class TestMergeCandidates(unittest.TestCase):
    def test_cross_source_duplicate_becomes_hybrid(self):
        fused = merge_candidates([
            make_candidate(SourceTag.TMDB, 555, 85, "Because you like Drama"),
            make_candidate(SourceTag.WATCHMODE, 555, 75, "Trending on streaming platforms"),
        ])
        self.assertEqual(len(fused), 1)
        item = fused[0]
        self.assertEqual(item.source, SourceTag.HYBRID)
        self.assertEqual(item.sources, [SourceTag.TMDB, SourceTag.WATCHMODE])
        self.assertEqual(item.confidence, 95)
        self.assertIn("Because you like Drama", item.reason)
        self.assertIn("Trending on streaming platforms", item.reason)
        self.assertEqual(item.reason, "Because you like Drama • Trending on streaming platforms")

    def test_same_source_duplicate_is_also_corroborated(self):
        fused = merge_candidates([
            make_candidate(SourceTag.TMDB, 7, 85, "Because you like Drama"),
            make_candidate(SourceTag.TMDB, 7, 90, "Similar to Dark"),
        ])
        self.assertEqual((fused[0].source, fused[0].confidence), (SourceTag.HYBRID, 100))
        self.assertEqual(fused[0].sources, [SourceTag.TMDB])
        self.assertEqual(fused[0].reason, "Because you like Drama • Similar to Dark")

    def test_fused_confidence_is_not_capped(self):
        fused = merge_candidates([
            make_candidate(SourceTag.TMDB, 555, 95, "a"),
            make_candidate(SourceTag.WATCHMODE, 555, 80, "b"),
        ])
        self.assertEqual(fused[0].confidence, 105)

        fused = merge_candidates([
            make_candidate(SourceTag.TMDB, 1, 90, "a"),
            make_candidate(SourceTag.WATCHMODE, 1, 75, "b"),
            make_candidate(SourceTag.UTELLY, 1, 60, "c"),
        ])
        self.assertEqual(fused[0].confidence, 110)

    def test_score_is_max_and_first_seen_fields_win(self):
        first = make_candidate(SourceTag.TMDB, 3, 85, "a", score=40.0, title="Original Title")
        second = make_candidate(SourceTag.WATCHMODE, 3, 75, "b", score=70.0, title="Other Title")
        second.overview = "filled later"
        fused = merge_candidates([first, second])
        self.assertEqual(fused[0].title, "Original Title")
        self.assertEqual(fused[0].personalized_score, 70.0)
        self.assertEqual(fused[0].overview, "filled later")

    def test_candidates_without_canonical_id_are_dropped(self):
        orphan = make_candidate(SourceTag.UTELLY, None, 60, "x")
        self.assertEqual(merge_candidates([orphan]), [])

    def test_duplicate_reason_not_repeated(self):
        fused = merge_candidates([
            make_candidate(SourceTag.TMDB, 9, 85, "Because you like Drama"),
            make_candidate(SourceTag.UTELLY, 9, 60, "Because you like Drama"),
        ])
        self.assertEqual(fused[0].reason, "Because you like Drama")


class TestRankingHelpers(unittest.TestCase):
    def test_ties_keep_source_order(self):
        items = [
            make_item(1, 50.0, SourceTag.TMDB),
            make_item(2, 50.0, SourceTag.WATCHMODE),
            make_item(3, 50.0, SourceTag.UTELLY),
            make_item(4, 80.0, SourceTag.UTELLY),
        ]
        self.assertEqual([r.canonical_id for r in rank(items, 10)], [4, 1, 2, 3])

    def test_rank_respects_limit(self):
        items = [make_item(i, float(i)) for i in range(10)]
        self.assertEqual(len(rank(items, 3)), 3)
        self.assertEqual(rank(items, 0), [])

    def test_source_quota_floor(self):
        self.assertEqual(source_quota(20, 0.6), 12)
        self.assertEqual(source_quota(20, 0.1), 2)
        self.assertEqual(source_quota(3, 0.1), 1)

    def test_creator_prefers_top_platform(self):
        item = make_item(1, 10.0, networks=["AMC"])
        self.assertEqual(creator_of(item), "AMC")
        item.streaming_availability = StreamingAvailability(total_platforms=1, top_platforms=["Netflix"])
        self.assertEqual(creator_of(item), "Netflix")
        self.assertIsNone(creator_of(make_item(2, 1.0)))

    def test_exploration_means_no_favorite_genre(self):
        self.assertFalse(is_exploration(make_item(1, 1.0, genres=["Drama"]), DRAMA_FAN))
        self.assertTrue(is_exploration(make_item(2, 1.0, genres=["Animation"]), DRAMA_FAN))
        self.assertFalse(is_exploration(make_item(3, 1.0, genres=[]), DRAMA_FAN))


class TestFusionEngine(unittest.IsolatedAsyncioTestCase):
    def make_engine(self, tmdb=None, watchmode=None, utelly=None, availability=None, store=None, **overrides):
        self.metrics = InMemoryMetricsSink()
        return FusionEngine(
            tmdb=tmdb or FakeTmdb(),
            watchmode=watchmode or FakeWatchmode(),
            utelly=utelly or FakeUtelly(),
            availability=availability,
            store=store,
            settings=make_settings(**overrides),
            metrics=self.metrics,
        )

    async def test_same_show_from_two_sources_is_fused(self):
        engine = self.make_engine(
            tmdb=FakeTmdb(by_genre={18: [make_show(555, "The Lighthouse Keepers")]}),
            watchmode=FakeWatchmode(trending=[make_title(9001, 555, "The Lighthouse Keepers")]),
        )
        recs = await engine.get_recommendations(DRAMA_FAN, limit=10)

        self.assertEqual([r.canonical_id for r in recs], [555])
        self.assertEqual(recs[0].source, SourceTag.HYBRID)
        self.assertEqual(recs[0].confidence, 95)
        self.assertIn("Because you like Drama", recs[0].reason)
        self.assertIn("Trending on streaming platforms", recs[0].reason)

    async def test_output_never_exceeds_limit(self):
        shows = [make_show(100 + i) for i in range(30)]
        titles = [make_title(2000 + i, 300 + i) for i in range(30)]
        engine = self.make_engine(tmdb=FakeTmdb(by_genre={18: shows}), watchmode=FakeWatchmode(trending=titles))
        for limit in (1, 3, 5, 20):
            recs = await engine.get_recommendations(DRAMA_FAN, limit=limit)
            self.assertLessEqual(len(recs), limit)
            self.assertTrue(recs)
            self.assertEqual(len({r.canonical_id for r in recs}), len(recs))

    async def test_failing_sources_degrade_gracefully(self):
        engine = self.make_engine(
            tmdb=FakeTmdb(error=CatalogUnavailableError("TMDB down", source="tmdb")),
            watchmode=FakeWatchmode(trending=[make_title(1, 777)]),
            utelly=FakeUtelly(error=ConnectionError("refused")),
        )
        recs = await engine.get_recommendations(DRAMA_FAN, limit=10)

        self.assertEqual([r.canonical_id for r in recs], [777])
        self.assertEqual(recs[0].source, SourceTag.WATCHMODE)
        self.assertEqual(self.metrics.counters["fusion.source.tmdb.failures"], 1)
        self.assertEqual(self.metrics.counters["fusion.source.utelly.failures"], 1)

    async def test_all_sources_failing_returns_empty(self):
        store = FakeStore()
        engine = self.make_engine(
            tmdb=FakeTmdb(error=CatalogUnavailableError("down")),
            watchmode=FakeWatchmode(error=CatalogUnavailableError("down")),
            utelly=FakeUtelly(error=CatalogUnavailableError("down")),
            store=store,
        )
        self.assertEqual(await engine.get_recommendations(DRAMA_FAN, limit=10), [])
        self.assertEqual(store.logs, [])

    async def test_slow_source_is_abandoned(self):
        engine = self.make_engine(
            tmdb=FakeTmdb(by_genre={18: [make_show(1)]}, delay=2.0),
            watchmode=FakeWatchmode(trending=[make_title(5, 42)]),
            fusion_adapter_timeout_seconds=0.05,
        )
        recs = await engine.get_recommendations(DRAMA_FAN, limit=10)
        self.assertEqual([r.canonical_id for r in recs], [42])

    async def test_partial_failure_within_a_source_is_tolerated(self):
        class HalfBrokenTmdb(FakeTmdb):
            async def similar(self, tmdb_id, page=1):
                raise CatalogUnavailableError("similar endpoint down")

        prefs = UserPreferences(
            favorite_genres=["Drama"],
            viewing_history=[ViewingHistoryEntry(show_id=1, title="Dark", tmdb_id=70523)],
        )
        engine = self.make_engine(tmdb=HalfBrokenTmdb(by_genre={18: [make_show(8)]}))
        recs = await engine.get_recommendations(prefs, limit=10)
        self.assertEqual([r.canonical_id for r in recs], [8])

    async def test_similar_titles_carry_seed_reason(self):
        prefs = UserPreferences(viewing_history=[ViewingHistoryEntry(show_id=1, title="Dark", tmdb_id=70523)])
        engine = self.make_engine(tmdb=FakeTmdb(similar={70523: [make_show(11)]}))
        recs = await engine.get_recommendations(prefs, limit=5)
        self.assertEqual(recs[0].reason, "Similar to Dark")
        self.assertEqual(recs[0].confidence, 90)

    async def test_utelly_rows_need_a_tmdb_id(self):
        known = UtellyResult(id="u-1", name="Known", external_ids={"tmdb": {"id": "321"}})
        resolvable = UtellyResult(id="u-2", name="Resolvable")
        unknown = UtellyResult(id="u-3", name="Mystery Box")
        engine = self.make_engine(
            tmdb=FakeTmdb(resolved={"Resolvable": 654}),
            utelly=FakeUtelly(by_term={"Drama TV series": [known, resolvable, unknown]}),
        )
        # a 60-item request gives the tertiary pass room for three rows per genre
        recs = await engine.get_recommendations(DRAMA_FAN, limit=60)
        self.assertEqual(sorted(r.canonical_id for r in recs), [321, 654])
        self.assertTrue(all(r.source == SourceTag.UTELLY for r in recs))

    async def test_enrichment_adds_affiliate_bonus(self):
        show = make_show(555)
        availability = FakeAvailability({
            555: StreamingAvailability(total_platforms=3, affiliate_platforms=2, top_platforms=["Netflix", "Hulu"]),
        })
        engine = self.make_engine(tmdb=FakeTmdb(by_genre={18: [show]}), availability=availability)
        recs = await engine.get_recommendations(DRAMA_FAN, limit=5)

        base = score_tmdb_show(show, DRAMA_FAN, engine.settings)
        self.assertEqual(recs[0].personalized_score, base + 10)
        self.assertEqual(recs[0].streaming_availability.top_platforms, ["Netflix", "Hulu"])

    async def test_enrichment_failure_keeps_item_without_availability(self):
        engine = self.make_engine(
            watchmode=FakeWatchmode(trending=[make_title(1, 777, networks=("HBO",))]),
            availability=FakeAvailability(fail_ids={777}),
        )
        recs = await engine.get_recommendations(DRAMA_FAN, limit=5)
        self.assertEqual(len(recs), 1)
        self.assertIsNone(recs[0].streaming_availability)

    async def test_genre_and_similar_hits_for_one_show_are_fused(self):
        prefs = UserPreferences(
            favorite_genres=["Drama"],
            viewing_history=[ViewingHistoryEntry(show_id=1, title="Dark", tmdb_id=70523)],
        )
        engine = self.make_engine(tmdb=FakeTmdb(by_genre={18: [make_show(7)]}, similar={70523: [make_show(7)]}))
        recs = await engine.get_recommendations(prefs, limit=10)

        self.assertEqual([r.canonical_id for r in recs], [7])
        self.assertEqual(recs[0].source, SourceTag.HYBRID)
        self.assertEqual(recs[0].confidence, 100)

    async def test_temporal_profile_bonus(self):
        store = FakeStore()
        store.profiles["u1"] = UserTemporalProfile(user_id="u1", top_genres=["Drama"])
        drama = make_show(1, genre_ids=[18], vote=5.0)
        comedy = make_show(2, genre_ids=[35], vote=5.0)
        prefs = UserPreferences(favorite_genres=["Drama", "Comedy"])
        engine = self.make_engine(tmdb=FakeTmdb(by_genre={18: [drama], 35: [comedy]}), store=store)

        recs = await engine.get_recommendations(prefs, limit=5, user_id="u1")
        scores = {r.canonical_id: r.personalized_score for r in recs}
        self.assertEqual(scores[1] - scores[2], 5)

    async def test_output_is_logged_for_auditing(self):
        store = FakeStore()
        engine = self.make_engine(
            tmdb=FakeTmdb(by_genre={18: [make_show(555)]}),
            watchmode=FakeWatchmode(trending=[make_title(1, 777, networks=("HBO",))]),
            store=store,
        )
        recs = await engine.get_recommendations(DRAMA_FAN, limit=5, user_id="u1")

        self.assertEqual(len(store.logs), len(recs))
        row = store.logs[0]
        self.assertEqual(row["method_name"], FUSION_LOG_METHOD)
        self.assertEqual(row["user_id"], "u1")
        self.assertEqual(row["context"]["demographic"], "18-24")
        self.assertIn("creator", row["context"])
        self.assertFalse(row["context"]["is_exploration"])

    async def test_logging_failure_does_not_fail_request(self):
        class BrokenStore(FakeStore):
            async def insert_logs(self, rows):
                raise ConnectionError("store offline")

        engine = self.make_engine(tmdb=FakeTmdb(by_genre={18: [make_show(1)]}), store=BrokenStore())
        recs = await engine.get_recommendations(DRAMA_FAN, limit=5)
        self.assertEqual(len(recs), 1)

    async def test_zero_limit_short_circuits(self):
        engine = self.make_engine(tmdb=FakeTmdb(by_genre={18: [make_show(1)]}))
        self.assertEqual(await engine.get_recommendations(DRAMA_FAN, limit=0), [])


if __name__ == "__main__":
    unittest.main()
