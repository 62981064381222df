import json
import unittest
import httpx
from playback_sync.config import settings
from playback_sync.clients.store_client import SupabaseStore, StoreError, is_missing_column_error, is_unique_violation


class TestSupabaseStore(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        settings.SUPABASE_ANON_KEY = "anon-key"
        self.requests = []
        self.responses = {}

    def make_store(self, access_token="token-1"):
        def handler(request: httpx.Request):
            self.requests.append(request)
            key = (request.method, request.url.path)
            status, body = self.responses.get(key, (200, []))
            return httpx.Response(status, json=body)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://store.test")
        return SupabaseStore(client=client, access_token=access_token)

    async def test_current_principal(self):
        self.responses[("GET", "/auth/v1/user")] = (200, {"id": "user-42"})
        store = self.make_store()

        self.assertEqual(await store.current_principal(), "user-42")
        request = self.requests[0]
        self.assertEqual(request.headers["Authorization"], "Bearer token-1")
        self.assertEqual(request.headers["apikey"], "anon-key")

    async def test_no_token_means_no_principal(self):
        store = self.make_store(access_token="")
        self.assertIsNone(await store.current_principal())
        self.assertEqual(self.requests, [])

    async def test_rejected_token_means_no_principal(self):
        self.responses[("GET", "/auth/v1/user")] = (401, {"msg": "invalid JWT"})
        store = self.make_store()
        self.assertIsNone(await store.current_principal())

    async def test_query_encodes_filters(self):
        self.responses[("GET", "/rest/v1/watch_progress")] = (200, [{"progress_seconds": 10}])
        store = self.make_store()

        rows = await store.query(
            "watch_progress",
            {"user_id": "u1", "movie_id": "m1", "episode_id": None},
            columns=("movie_id", "progress_seconds"),
            order="updated_at.desc",
            limit=1,
        )

        self.assertEqual(rows, [{"progress_seconds": 10}])
        params = self.requests[0].url.params
        self.assertEqual(params["user_id"], "eq.u1")
        self.assertEqual(params["movie_id"], "eq.m1")
        self.assertEqual(params["episode_id"], "is.null")
        self.assertEqual(params["select"], "movie_id,progress_seconds")
        self.assertEqual(params["order"], "updated_at.desc")
        self.assertEqual(params["limit"], "1")

    async def test_upsert_merges_on_conflict_key(self):
        self.responses[("POST", "/rest/v1/watch_progress")] = (201, None)
        store = self.make_store()

        row = {"user_id": "u1", "movie_id": "m1", "episode_id": "e1", "progress_seconds": 5}
        await store.upsert("watch_progress", row, on_conflict=("user_id", "movie_id", "episode_id"))

        request = self.requests[0]
        self.assertEqual(request.url.params["on_conflict"], "user_id,movie_id,episode_id")
        self.assertIn("resolution=merge-duplicates", request.headers["Prefer"])
        self.assertEqual(json.loads(request.content), row)

    async def test_update_returns_affected_rows(self):
        self.responses[("PATCH", "/rest/v1/watch_progress")] = (200, [{"id": 1}, {"id": 2}])
        store = self.make_store()

        count = await store.update("watch_progress", {"progress_seconds": 5}, {"movie_id": "m1", "episode_id": None})

        self.assertEqual(count, 2)
        self.assertEqual(self.requests[0].headers["Prefer"], "return=representation")
        self.assertEqual(self.requests[0].url.params["episode_id"], "is.null")

    async def test_delete_sends_exact_filters(self):
        self.responses[("DELETE", "/rest/v1/watch_progress")] = (204, None)
        store = self.make_store()

        await store.delete("watch_progress", {"user_id": "u1", "movie_id": "m1", "episode_id": "e1"})

        params = self.requests[0].url.params
        self.assertEqual(params["episode_id"], "eq.e1")

    async def test_errors_become_store_errors(self):
        self.responses[("POST", "/rest/v1/watch_progress")] = (409, {
            "code": "23505",
            "message": 'duplicate key value violates unique constraint "watch_progress_pkey"',
            "details": "Key already exists.",
        })
        store = self.make_store()

        with self.assertRaises(StoreError) as ctx:
            await store.insert("watch_progress", {"movie_id": "m1"})

        self.assertEqual(ctx.exception.code, "23505")
        self.assertEqual(ctx.exception.status, 409)
        self.assertTrue(is_unique_violation(ctx.exception))


class TestErrorClassification(unittest.TestCase):
    def test_missing_column(self):
        err = StoreError("Could not find the 'duration_seconds' column of 'watch_progress' in the schema cache", code="PGRST204")
        self.assertTrue(is_missing_column_error(err, "duration_seconds"))
        self.assertFalse(is_missing_column_error(err, "progress_seconds"))

    def test_missing_column_in_details(self):
        err = StoreError("column does not exist", code="42703", details="duration_seconds")
        self.assertTrue(is_missing_column_error(err, "duration_seconds"))

    def test_other_errors(self):
        self.assertFalse(is_missing_column_error(ValueError("duration_seconds"), "duration_seconds"))
        self.assertFalse(is_unique_violation(StoreError("permission denied", code="42501")))


if __name__ == '__main__':
    unittest.main()
