import unittest
from playback_sync.models import ContentIdentity, WatchProgressRecord


class TestContentIdentity(unittest.TestCase):
    def test_blank_unit_means_title_itself(self):
        identity = ContentIdentity(content_id=" movie-1 ", unit_id="  ", season_id="")
        self.assertEqual(identity.content_id, "movie-1")
        self.assertIsNone(identity.unit_id)
        self.assertIsNone(identity.season_id)
        self.assertTrue(identity.is_movie)

    def test_season_is_not_part_of_the_key(self):
        a = ContentIdentity(content_id="s", unit_id="e1", season_id="s1")
        b = ContentIdentity(content_id="s", unit_id="e1", season_id="s2")
        self.assertEqual(a.key(), b.key())


class TestRecordNormalization(unittest.TestCase):
    def test_store_row(self):
        record = WatchProgressRecord.from_row({
            "movie_id": "m1", "episode_id": "e1", "progress_seconds": 120,
            "duration_seconds": 1200, "updated_at": "2026-03-01T10:00:00+00:00",
        })
        self.assertEqual(record.content_id, "m1")
        self.assertEqual(record.unit_id, "e1")
        self.assertEqual(record.position_seconds, 120)
        self.assertEqual(record.duration_seconds, 1200)
        self.assertEqual(record.updated_at.year, 2026)

    def test_alternate_spellings(self):
        record = WatchProgressRecord.from_row({
            "contentId": "m1", "episodeId": None, "positionSeconds": "42.7",
            "durationSeconds": "600",
        })
        self.assertEqual(record.content_id, "m1")
        self.assertIsNone(record.unit_id)
        self.assertEqual(record.position_seconds, 42)
        self.assertEqual(record.duration_seconds, 600)

    def test_missing_duration_column(self):
        record = WatchProgressRecord.from_row({"movie_id": "m1", "progress_seconds": 10})
        self.assertIsNone(record.duration_seconds)
        self.assertFalse(record.is_near_end(45))

    def test_garbage_position_reads_as_zero(self):
        record = WatchProgressRecord.from_row({"movie_id": "m1", "progress_seconds": "abc"})
        self.assertEqual(record.position_seconds, 0)

    def test_near_end(self):
        record = WatchProgressRecord(content_id="m1", position_seconds=1160, duration_seconds=1200)
        self.assertTrue(record.is_near_end(45))
        self.assertFalse(record.is_near_end(30))


if __name__ == '__main__':
    unittest.main()
