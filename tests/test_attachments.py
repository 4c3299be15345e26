import os
import sys
import tempfile
import unittest
from unittest import mock


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

import anyio
import anyio.to_thread
import httpx

from app.attachments import LocalStorage, SupabaseStorage, storage_from_env, storage_key
from plank.errors import RemoteError, TransportFailure


class TestStorageKey(unittest.TestCase):
    def test_keeps_folder_and_name(self) -> None:
        key = storage_key(b"abc", "/entries/e1/brief.pdf")
        folder, _, name = key.rpartition("/")
        self.assertEqual(folder, "entries/e1")
        self.assertTrue(name.endswith("_brief.pdf"))
        self.assertEqual(len(name.split("_", 1)[0]), 16)

    def test_same_content_same_key(self) -> None:
        self.assertEqual(storage_key(b"abc", "a.txt"), storage_key(b"abc", "a.txt"))
        self.assertNotEqual(storage_key(b"abc", "a.txt"), storage_key(b"abd", "a.txt"))


class TestSupabaseStorage(unittest.IsolatedAsyncioTestCase):
    async def test_upload_and_public_url(self) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"Key": "ok"})

        storage = SupabaseStorage("https://proj.supabase.co/", "service", "entry_files", transport=httpx.MockTransport(handler))
        key = await storage.put(b"%PDF", "entries/e1/brief sheet.pdf", "application/pdf")
        self.assertEqual(seen[0].method, "POST")
        self.assertIn("/storage/v1/object/entry_files/entries/e1/", str(seen[0].url))
        self.assertEqual(seen[0].headers["Authorization"], "Bearer service")
        self.assertEqual(seen[0].headers["Content-Type"], "application/pdf")
        url = await storage.public_url(key)
        self.assertTrue(url.startswith("https://proj.supabase.co/storage/v1/object/public/entry_files/entries/e1/"))
        self.assertIn("brief%20sheet.pdf", url)

    async def test_upload_error_status(self) -> None:
        storage = SupabaseStorage(
            "https://proj.supabase.co", "service", transport=httpx.MockTransport(lambda r: httpx.Response(413, text="too large"))
        )
        with self.assertRaises(RemoteError) as ctx:
            await storage.put(b"x", "big.bin")
        self.assertEqual(ctx.exception.code, "STORAGE_UPLOAD_FAILED")
        self.assertEqual(ctx.exception.detail["status"], 413)

    async def test_network_error_is_transport_failure(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        storage = SupabaseStorage("https://proj.supabase.co", "service", transport=httpx.MockTransport(handler))
        with self.assertRaises(TransportFailure):
            await storage.put(b"x", "a.txt")
        self.assertFalse(await storage.remove("a.txt"))

    async def test_remove(self) -> None:
        storage = SupabaseStorage("https://proj.supabase.co", "service", transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        self.assertTrue(await storage.remove("entries/a.txt"))


class TestLocalStorage(unittest.IsolatedAsyncioTestCase):
    async def test_put_and_remove(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            storage = LocalStorage(tmp)
            key = await storage.put(b"hello", "entries/e1/note.txt")
            with open(os.path.join(tmp, key), "rb") as handle:
                self.assertEqual(handle.read(), b"hello")
            self.assertIsNone(await storage.public_url(key))
            self.assertTrue(await storage.remove(key))
            self.assertFalse(await storage.remove(key))

    async def test_remove_runs_on_worker_thread(self) -> None:
        offloaded = []
        run_sync = anyio.to_thread.run_sync

        async def recording(fn, *args, **kwargs):
            offloaded.append(fn.__name__)
            return await run_sync(fn, *args, **kwargs)

        with tempfile.TemporaryDirectory() as tmp:
            storage = LocalStorage(tmp)
            key = await storage.put(b"draft", "documents/c1/plan.txt")
            with mock.patch.object(anyio.to_thread, "run_sync", recording):
                self.assertTrue(await storage.remove(key))
            self.assertFalse(os.path.exists(os.path.join(tmp, key)))
        self.assertEqual(offloaded, ["_unlink"])


class TestStorageFromEnv(unittest.TestCase):
    def test_selects_backend(self) -> None:
        with mock.patch.dict(os.environ, {"SUPABASE_URL": "https://proj.supabase.co", "SUPABASE_SERVICE_ROLE_KEY": "k"}):
            storage = storage_from_env()
            self.assertIsInstance(storage, SupabaseStorage)
            self.assertEqual(storage.bucket, "entry_files")
        with mock.patch.dict(os.environ, {"SUPABASE_URL": "", "SUPABASE_SERVICE_ROLE_KEY": ""}):
            self.assertIsInstance(storage_from_env(), LocalStorage)


if __name__ == "__main__":
    unittest.main()
