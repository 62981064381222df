import unittest
import httpx
from playback_sync.models import ThumbnailCue
from playback_sync.thumbnails import ThumbnailIndex, load_thumbnail_index, parse_cue_sheet, parse_timestamp

SHEET = """WEBVTT

1
00:00:00.000 --> 00:00:05.000
sprite.jpg#xywh=0,0,160,90

2
00:00:05.000 --> 00:00:12.000
sprite.jpg#xywh=160,0,160,90

00:00:12.000 --> 00:00:20.000 align:start
https://cdn.example.com/other.jpg
"""


class TestParsing(unittest.TestCase):
    def test_timestamps(self):
        self.assertEqual(parse_timestamp("00:01:05.500"), 65.5)
        self.assertEqual(parse_timestamp("01:05.250"), 65.25)
        self.assertEqual(parse_timestamp("01:00:00.000"), 3600)
        with self.assertRaises(ValueError):
            parse_timestamp("aa:bb")

    def test_parse_sheet(self):
        index = parse_cue_sheet(SHEET, base_url="https://cdn.example.com/thumbs/movie.vtt")

        self.assertEqual(len(index), 3)
        first, second, third = index.cues
        self.assertEqual(first.image_url, "https://cdn.example.com/thumbs/sprite.jpg")
        self.assertEqual((first.region.x, first.region.w, first.region.h), (0, 160, 90))
        self.assertEqual(second.region.x, 160)
        self.assertEqual((second.start_seconds, second.end_seconds), (5.0, 12.0))
        self.assertEqual(third.image_url, "https://cdn.example.com/other.jpg")
        self.assertIsNone(third.region)

    def test_windows_line_endings_and_notes(self):
        text = "WEBVTT\r\n\r\nNOTE generated\r\nby tool\r\n\r\n00:00.000 --> 00:10.000\r\na.jpg\r\n"
        index = parse_cue_sheet(text)
        self.assertEqual(len(index), 1)
        self.assertEqual(index.cues[0].image_url, "a.jpg")

    def test_missing_header_gives_empty_index(self):
        index = parse_cue_sheet("00:00.000 --> 00:10.000\na.jpg\n")
        self.assertEqual(len(index), 0)
        self.assertIsNone(index.lookup(3))

    def test_garbage_cues_are_skipped(self):
        text = "WEBVTT\n\nxx --> yy\nbad.jpg\n\n00:00.000 --> 00:04.000\ngood.jpg\n"
        index = parse_cue_sheet(text)
        self.assertEqual([c.image_url for c in index.cues], ["good.jpg"])


class TestLookup(unittest.TestCase):
    def setUp(self):
        self.index = ThumbnailIndex([
            ThumbnailCue(start_seconds=5, end_seconds=12, image_url="url2"),
            ThumbnailCue(start_seconds=0, end_seconds=5, image_url="url1"),
        ])

    def test_half_open_intervals(self):
        self.assertEqual(self.index.lookup(4.9).image_url, "url1")
        self.assertEqual(self.index.lookup(5.0).image_url, "url2")

    def test_past_the_end_returns_last(self):
        self.assertEqual(self.index.lookup(100).image_url, "url2")

    def test_empty_index(self):
        self.assertIsNone(ThumbnailIndex().lookup(1))


class TestLoading(unittest.IsolatedAsyncioTestCase):
    async def test_load_over_http(self):
        def handler(request):
            return httpx.Response(200, text=SHEET)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            index = await load_thumbnail_index("https://cdn.example.com/thumbs/movie.vtt", client=client)

        self.assertEqual(len(index), 3)
        self.assertEqual(index.lookup(6).image_url, "https://cdn.example.com/thumbs/sprite.jpg")

    async def test_http_failure_gives_empty_index(self):
        def handler(request):
            return httpx.Response(404, text="not found")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            index = await load_thumbnail_index("https://cdn.example.com/missing.vtt", client=client)

        self.assertEqual(len(index), 0)


if __name__ == '__main__':
    unittest.main()
