import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.comments import create_comment, delete_comment, list_comments
from app.session import Session
from app.stores import InMemoryPersistence, StaticIdentity
from app.users import get_current_profile, get_user_profile
from plank.errors import NotAuthenticatedError, TransportFailure, ValidationError


class CommentTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.store = InMemoryPersistence()
        self.store.seed("users", {"id": "u1", "name": "Ada", "email": "ada@example.com", "role": "admin"})
        self.store.seed("collections", {"id": "c1", "name": "Bugs"})
        self.store.seed("entries", {"id": "e1", "collection_id": "c1", "status_id": None})
        self.session = Session(persistence=self.store, identity=StaticIdentity("u1"))


class TestComments(CommentTestCase):
    async def test_create_trims_and_joins_user(self) -> None:
        comment = await create_comment(self.session, "e1", "  Looks good  ")
        self.assertEqual(comment["content"], "Looks good")
        self.assertEqual(comment["user"], {"id": "u1", "name": "Ada", "email": "ada@example.com"})

    async def test_empty_content_rejected(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            await create_comment(self.session, "e1", "   ")
        self.assertEqual(ctx.exception.code, "EMPTY_COMMENT")
        self.assertEqual(self.store.writes, [])

    async def test_requires_user(self) -> None:
        session = Session(persistence=self.store, identity=StaticIdentity(None))
        with self.assertRaises(NotAuthenticatedError):
            await create_comment(session, "e1", "hi")

    async def test_list_in_creation_order(self) -> None:
        self.store.seed(
            "comments",
            [
                {"id": "k2", "entry_id": "e1", "user_id": "u1", "content": "second", "created_at": "2026-03-02T00:00:00Z"},
                {"id": "k1", "entry_id": "e1", "user_id": "u1", "content": "first", "created_at": "2026-03-01T00:00:00Z"},
            ],
        )
        comments = await list_comments(self.session, "e1")
        self.assertEqual([c["content"] for c in comments], ["first", "second"])
        self.assertNotIn("role", comments[0]["user"])
        self.assertEqual(await list_comments(self.session, ""), [])

    async def test_delete(self) -> None:
        comment = await create_comment(self.session, "e1", "bye")
        self.assertTrue(await delete_comment(self.session, comment["id"]))
        self.assertFalse(await delete_comment(self.session, comment["id"]))

    async def test_delete_failure_returns_false(self) -> None:
        self.store.inject_fault("delete", "comments", TransportFailure(message="offline"))
        with self.assertLogs("plank.comments", level="WARNING"):
            self.assertFalse(await delete_comment(self.session, "k1"))

    async def test_entry_delete_cascades_comments(self) -> None:
        await create_comment(self.session, "e1", "note")
        await self.store.delete("entries", "e1")
        self.assertEqual(self.store.snapshot("comments"), [])


class TestUsers(CommentTestCase):
    async def test_profile_lookup(self) -> None:
        self.assertEqual((await get_user_profile(self.session, "u1"))["name"], "Ada")
        self.assertIsNone(await get_user_profile(self.session, "nobody"))
        self.assertIsNone(await get_user_profile(self.session, None))
        self.assertEqual((await get_current_profile(self.session))["email"], "ada@example.com")


if __name__ == "__main__":
    unittest.main()
