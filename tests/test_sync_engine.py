import asyncio
import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

import record_store
from app.session import Session
from app.stores import InMemoryPersistence, StaticIdentity
from event_bus import SYNC_REJECTED, SYNC_ROLLED_BACK
from plank.errors import TransportFailure
from schema_model import create_collection
from sync_engine import BoardSurface, FieldManagerSurface, FormCanvasSurface, StatusManagerSurface, SyncState


class SyncTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.store = InMemoryPersistence()
        self.session = Session(persistence=self.store, identity=StaticIdentity("u1"))
        self.schema = await create_collection(
            self.session,
            "Bugs",
            [
                {"name": "Title", "type": "text"},
                {"name": "Priority", "type": "select", "options": ["Low", "High"]},
                {"name": "Due", "type": "date"},
            ],
            [{"name": "Todo"}, {"name": "Doing"}, {"name": "Done"}],
        )
        self.todo, self.doing, self.done = (s["id"] for s in self.schema.statuses)
        title = self.schema.fields[0]["id"]
        self.e1 = await record_store.create_entry(self.session, self.schema.id, self.todo, {title: "Crash"}, schema=self.schema)
        self.e2 = await record_store.create_entry(self.session, self.schema.id, self.todo, {title: "Typo"}, schema=self.schema)
        self.e3 = await record_store.create_entry(self.session, self.schema.id, self.doing, {title: "Slow"}, schema=self.schema)

    def board(self) -> BoardSurface:
        return BoardSurface(self.session, self.schema, [self.e1, self.e2, self.e3])

    def stored_status(self, entry_id: str) -> str:
        return next(e["status_id"] for e in self.store.snapshot("entries") if e["id"] == entry_id)


class TestBoardSurface(SyncTestCase):
    async def test_drag_to_another_column_commits(self) -> None:
        board = self.board()
        env = await board.move_card(self.e1["id"], self.done, 0)
        self.assertTrue(env["ok"], env)
        self.assertEqual(env["status"], "committed")
        self.assertEqual(board.column_ids(self.done), [self.e1["id"]])
        self.assertEqual(board.column_ids(self.todo), [self.e2["id"]])
        self.assertEqual(board.entry(self.e1["id"])["status_id"], self.done)
        self.assertEqual(self.stored_status(self.e1["id"]), self.done)
        self.assertEqual(board.status, SyncState.COMMITTED)
        self.assertEqual(self.session.outbox.pending(), [])

    async def test_move_is_visible_before_write_resolves(self) -> None:
        board = self.board()
        gate = self.store.gate("update", "entries")
        task = asyncio.ensure_future(board.move_card(self.e1["id"], self.done))
        await asyncio.sleep(0)
        self.assertEqual(board.status, SyncState.PENDING)
        self.assertTrue(board.is_pending(self.e1["id"]))
        self.assertEqual(board.column_ids(self.done), [self.e1["id"]])
        self.assertEqual(self.stored_status(self.e1["id"]), self.todo)
        gate.set()
        env = await task
        self.assertEqual(env["status"], "committed")

    async def test_failed_write_restores_exact_state(self) -> None:
        board = self.board()
        before = board.state
        before_hash = board.fingerprint()
        self.store.inject_fault("update", "entries", TransportFailure(message="network down"))
        env = await board.move_card(self.e1["id"], self.done, 0)
        self.assertFalse(env["ok"])
        self.assertEqual(env["status"], "rolled_back")
        self.assertEqual(env["errors"][0]["code"], "TRANSPORT_FAILURE")
        self.assertEqual(board.state, before)
        self.assertEqual(board.fingerprint(), before_hash)
        notices = self.session.outbox.pending("board")
        self.assertEqual([n["name"] for n in notices], [SYNC_ROLLED_BACK])
        self.assertEqual(notices[0]["payload"]["kind"], "transport")
        self.assertEqual(notices[0]["meta"]["entity_id"], self.e1["id"])

    async def test_drop_on_same_slot_writes_nothing(self) -> None:
        board = self.board()
        writes = len(self.store.writes)
        env = await board.move_card(self.e2["id"], self.todo, 1)
        self.assertEqual(env["status"], "unchanged")
        self.assertEqual(len(self.store.writes), writes)

    async def test_reorder_inside_column_stays_local(self) -> None:
        board = self.board()
        writes = len(self.store.writes)
        env = await board.move_card(self.e2["id"], self.todo, 0)
        self.assertEqual(env["status"], "local")
        self.assertEqual(board.column_ids(self.todo), [self.e2["id"], self.e1["id"]])
        self.assertEqual(len(self.store.writes), writes)

    async def test_second_gesture_on_pending_card_is_rejected(self) -> None:
        board = self.board()
        gate = self.store.gate("update", "entries")
        task = asyncio.ensure_future(board.move_card(self.e1["id"], self.doing))
        await asyncio.sleep(0)
        snapshot = board.state
        env = await board.move_card(self.e1["id"], self.done)
        self.assertEqual(env["status"], "rejected")
        self.assertEqual(env["errors"][0]["code"], "MUTATION_PENDING")
        self.assertEqual(board.state, snapshot)
        self.assertEqual([n["name"] for n in self.session.outbox.pending("board")], [SYNC_REJECTED])
        gate.set()
        self.assertEqual((await task)["status"], "committed")
        self.assertEqual(self.stored_status(self.e1["id"]), self.doing)

    async def test_out_of_order_failure_keeps_other_move(self) -> None:
        board = self.board()
        first_gate = self.store.gate("update", "entries")
        second_gate = self.store.gate("update", "entries")
        first = asyncio.ensure_future(board.move_card(self.e1["id"], self.done))
        await asyncio.sleep(0)
        second = asyncio.ensure_future(board.move_card(self.e2["id"], self.doing))
        await asyncio.sleep(0)

        second_gate.set()
        self.assertEqual((await second)["status"], "committed")
        self.store.inject_fault("update", "entries", TransportFailure(message="timeout"))
        first_gate.set()
        self.assertEqual((await first)["status"], "rolled_back")

        self.assertEqual(board.column_ids(self.todo), [self.e1["id"]])
        self.assertEqual(board.column_ids(self.doing), [self.e3["id"], self.e2["id"]])
        self.assertEqual(board.column_ids(self.done), [])
        self.assertEqual(board.entry(self.e1["id"])["status_id"], self.todo)
        self.assertEqual(board.entry(self.e2["id"])["status_id"], self.doing)

    async def test_stale_confirmation_is_not_merged(self) -> None:
        board = self.board()
        gate = self.store.gate("update", "entries")
        task = asyncio.ensure_future(board.move_card(self.e1["id"], self.done))
        await asyncio.sleep(0)
        board.forget_field(self.schema.fields[0]["id"])
        local = board.entry(self.e1["id"])
        gate.set()
        with self.assertLogs("plank.sync", level="WARNING"):
            env = await task
        self.assertEqual(env["status"], "committed")
        self.assertEqual(env["warnings"][0]["code"], "STALE_CONFIRMATION")
        self.assertEqual(board.entry(self.e1["id"]), local)

    async def test_closed_surface_discards_late_results(self) -> None:
        board = self.board()
        gate = self.store.gate("update", "entries")
        self.store.inject_fault("update", "entries", TransportFailure(message="late"))
        task = asyncio.ensure_future(board.move_card(self.e1["id"], self.done))
        await asyncio.sleep(0)
        snapshot = board.state
        board.close()
        gate.set()
        env = await task
        self.assertEqual(env["status"], "discarded")
        self.assertEqual(board.state, snapshot)
        self.assertEqual(self.session.outbox.pending(), [])
        self.assertEqual((await board.move_card(self.e2["id"], self.done))["status"], "discarded")

    async def test_unknown_column_is_invalid(self) -> None:
        board = self.board()
        env = await board.move_card(self.e1["id"], "archived")
        self.assertEqual(env["status"], "invalid")
        self.assertEqual(env["errors"][0]["code"], "INVALID_STATUS")

    async def test_columns_follow_status_order(self) -> None:
        columns = self.board().columns()
        self.assertEqual([c["status"]["name"] for c in columns], ["Todo", "Doing", "Done"])
        self.assertEqual([len(c["entries"]) for c in columns], [2, 1, 0])

    async def test_cancelled_write_rolls_back_and_frees_card(self) -> None:
        board = self.board()
        before = board.state
        self.store.gate("update", "entries")
        task = asyncio.ensure_future(board.move_card(self.e1["id"], self.done))
        await asyncio.sleep(0)
        self.assertTrue(board.is_pending(self.e1["id"]))
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        self.assertFalse(board.is_pending(self.e1["id"]))
        self.assertEqual(board.state, before)
        self.assertEqual(board.status, SyncState.ROLLED_BACK)
        notice = self.session.outbox.pending("board")[0]
        self.assertEqual(notice["payload"]["code"], "CANCELLED")
        env = await board.move_card(self.e1["id"], self.doing)
        self.assertEqual(env["status"], "committed")
        self.assertEqual(self.stored_status(self.e1["id"]), self.doing)

    async def test_card_outside_every_column_is_invalid(self) -> None:
        stray = dict(self.e1, id="e-stray", status_id="gone")
        board = BoardSurface(self.session, self.schema, [self.e1, stray])
        writes = len(self.store.writes)
        env = await board.move_card("e-stray", self.done)
        self.assertEqual(env["status"], "invalid")
        self.assertEqual(env["errors"][0]["code"], "ENTRY_WITHOUT_STATUS")
        self.assertEqual(len(self.store.writes), writes)


class TestFieldManagerSurface(SyncTestCase):
    def stored_fields(self) -> list:
        return sorted((f["order"], f["name"]) for f in self.store.snapshot("fields"))

    async def test_failure_midway_through_order_writes_keeps_store_dense(self) -> None:
        manager = FieldManagerSurface(self.session, self.schema)
        before = manager.state
        self.store.inject_fault("update", "fields", TransportFailure(message="dropped"), skip=1)
        env = await manager.move_field(2, 0)
        self.assertEqual(env["status"], "rolled_back")
        self.assertEqual(manager.state, before)
        self.assertEqual(self.stored_fields(), [(0, "Title"), (1, "Priority"), (2, "Due")])

    async def test_rollback_returns_to_last_committed_order(self) -> None:
        manager = FieldManagerSurface(self.session, self.schema)
        moves = [(2, 0), (0, 1), (1, 2), (2, 0), (0, 2)]
        failing = 2
        for step, (source, dest) in enumerate(moves):
            before = manager.state
            stored_before = self.stored_fields()
            if step == failing:
                self.store.inject_fault("update", "fields", TransportFailure(message="offline"), skip=1)
            env = await manager.move_field(source, dest)
            with self.subTest(step=step):
                if step == failing:
                    self.assertEqual(env["status"], "rolled_back")
                    self.assertEqual(manager.state, before)
                    self.assertEqual(self.stored_fields(), stored_before)
                else:
                    self.assertEqual(env["status"], "committed")
                self.assertEqual([f["order"] for f in manager.rows], [0, 1, 2])
                self.assertEqual(self.stored_fields(), [(f["order"], f["name"]) for f in manager.rows])

    async def test_move_last_field_first(self) -> None:
        manager = FieldManagerSurface(self.session, self.schema)
        env = await manager.move_field(2, 0)
        self.assertEqual(env["status"], "committed", env)
        self.assertEqual([(f["name"], f["order"]) for f in manager.rows], [("Due", 0), ("Title", 1), ("Priority", 2)])
        stored = {f["name"]: f["order"] for f in self.store.snapshot("fields")}
        self.assertEqual(stored, {"Due": 0, "Title": 1, "Priority": 2})
        self.assertEqual(self.schema.title_field["name"], "Due")

    async def test_failed_move_restores_order(self) -> None:
        manager = FieldManagerSurface(self.session, self.schema)
        before = manager.state
        self.store.inject_fault("update", "fields", TransportFailure(message="offline"))
        env = await manager.move_field(0, 2)
        self.assertEqual(env["status"], "rolled_back")
        self.assertEqual(manager.state, before)
        self.assertEqual([f["name"] for f in self.schema.fields], ["Title", "Priority", "Due"])

    async def test_title_field_removal_is_invalid_without_write(self) -> None:
        manager = FieldManagerSurface(self.session, self.schema)
        writes = len(self.store.writes)
        env = await manager.remove_field(self.schema.fields[0]["id"])
        self.assertEqual(env["status"], "invalid")
        self.assertEqual(env["errors"][0]["code"], "PROTECTED_FIELD")
        self.assertEqual(len(self.store.writes), writes)

    async def test_same_position_is_unchanged(self) -> None:
        manager = FieldManagerSurface(self.session, self.schema)
        self.assertEqual((await manager.move_field(1, 1))["status"], "unchanged")

    async def test_add_field_replaces_temporary_row(self) -> None:
        manager = FieldManagerSurface(self.session, self.schema)
        env = await manager.add_field("Estimate", "number")
        self.assertEqual(env["status"], "committed")
        created = env["result"]
        self.assertEqual(manager.rows[-1], created)
        self.assertFalse(created["id"].startswith("tmp-"))
        self.assertEqual(self.schema.fields[-1]["id"], created["id"])
        duplicate = await manager.add_field("estimate", "text")
        self.assertEqual(duplicate["status"], "invalid")
        self.assertEqual(duplicate["errors"][0]["code"], "DUPLICATE_NAME")

    async def test_remove_field_densifies_and_drops_values(self) -> None:
        manager = FieldManagerSurface(self.session, self.schema)
        priority = self.schema.fields[1]["id"]
        await record_store.update_entry_values(self.session, self.e1["id"], {priority: "High"}, schema=self.schema)
        env = await manager.remove_field(priority)
        self.assertEqual(env["status"], "committed")
        self.assertEqual([(f["name"], f["order"]) for f in manager.rows], [("Title", 0), ("Due", 1)])
        self.assertFalse(any(v["field_id"] == priority for v in self.store.snapshot("entry_values")))

    async def test_rename_field(self) -> None:
        manager = FieldManagerSurface(self.session, self.schema)
        env = await manager.update_field(self.schema.fields[1]["id"], {"name": "Severity"})
        self.assertEqual(env["status"], "committed")
        self.assertEqual(self.schema.fields[1]["name"], "Severity")

    async def test_pending_list_rejects_second_gesture(self) -> None:
        manager = FieldManagerSurface(self.session, self.schema)
        gate = self.store.gate("update", "fields")
        task = asyncio.ensure_future(manager.move_field(2, 0))
        await asyncio.sleep(0)
        env = await manager.add_field("Estimate", "number")
        self.assertEqual(env["status"], "rejected")
        gate.set()
        self.assertEqual((await task)["status"], "committed")


class TestStatusManagerSurface(SyncTestCase):
    async def test_failed_reorder_after_delete_keeps_status(self) -> None:
        await record_store.update_entry_status(self.session, self.e3["id"], self.done)
        manager = StatusManagerSurface(self.session, self.schema)
        self.store.inject_fault("update", "statuses", TransportFailure(message="offline"))
        env = await manager.remove_status(self.doing)
        self.assertEqual(env["status"], "rolled_back")
        self.assertEqual([s["name"] for s in manager.rows], ["Todo", "Doing", "Done"])
        stored = sorted((s["order"], s["name"]) for s in self.store.snapshot("statuses"))
        self.assertEqual(stored, [(0, "Todo"), (1, "Doing"), (2, "Done")])

    async def test_status_in_use_rolls_back_with_conflict_notice(self) -> None:
        manager = StatusManagerSurface(self.session, self.schema)
        before = manager.state
        env = await manager.remove_status(self.todo)
        self.assertEqual(env["status"], "rolled_back")
        self.assertEqual(env["errors"][0]["code"], "STATUS_IN_USE")
        self.assertEqual(manager.state, before)
        notice = self.session.outbox.pending("status_manager")[0]
        self.assertEqual(notice["name"], SYNC_ROLLED_BACK)
        self.assertEqual(notice["payload"]["kind"], "conflict")
        self.assertIn("Entries are currently assigned", notice["payload"]["message"])

    async def test_remove_unused_status(self) -> None:
        manager = StatusManagerSurface(self.session, self.schema)
        env = await manager.remove_status(self.done)
        self.assertEqual(env["status"], "committed")
        self.assertEqual([s["name"] for s in self.schema.statuses], ["Todo", "Doing"])

    async def test_reorder_and_add(self) -> None:
        manager = StatusManagerSurface(self.session, self.schema)
        self.assertEqual((await manager.move_status(2, 0))["status"], "committed")
        self.assertEqual([s["name"] for s in manager.rows], ["Done", "Todo", "Doing"])
        env = await manager.add_status("Blocked", "#000000")
        self.assertEqual(env["result"]["order"], 3)
        self.assertEqual((await manager.update_status(env["result"]["id"], {"color": "#111111"}))["status"], "committed")


class TestFormCanvasSurface(SyncTestCase):
    async def test_edit_locally_then_save(self) -> None:
        canvas = FormCanvasSurface(self.session, self.schema)
        writes = len(self.store.writes)
        name = (await canvas.add_form_field("text", "Name"))["result"]
        level = (await canvas.add_form_field("select"))["result"]
        self.assertEqual(level["options"], ["Option 1"])
        self.assertEqual((await canvas.move_form_field(1, 0))["status"], "local")
        self.assertEqual((await canvas.update_form_field(name["id"], {"required": True}))["status"], "local")
        self.assertTrue(canvas.dirty)
        self.assertEqual(len(self.store.writes), writes)

        env = await canvas.save()
        self.assertEqual(env["status"], "committed", env)
        self.assertFalse(canvas.dirty)
        stored = next(c for c in self.store.snapshot("collections") if c["id"] == self.schema.id)
        self.assertEqual([ff["id"] for ff in stored["form_definition"]], [level["id"], name["id"]])
        self.assertTrue(stored["form_definition"][1]["required"])

    async def test_invalid_edit_and_remove(self) -> None:
        canvas = FormCanvasSurface(self.session, self.schema)
        ff = (await canvas.add_form_field("text", "Email"))["result"]
        env = await canvas.update_form_field(ff["id"], {"label": "  "})
        self.assertEqual(env["status"], "invalid")
        self.assertEqual(canvas.form_fields[0]["label"], "Email")
        self.assertEqual((await canvas.remove_form_field(ff["id"]))["status"], "local")
        self.assertEqual(canvas.form_fields, [])
        self.assertEqual((await canvas.remove_form_field(ff["id"]))["status"], "invalid")

    async def test_failed_save_keeps_edits(self) -> None:
        canvas = FormCanvasSurface(self.session, self.schema)
        await canvas.add_form_field("date", "Due")
        before = canvas.state
        self.store.inject_fault("update", "collections", TransportFailure(message="offline"))
        env = await canvas.save()
        self.assertEqual(env["status"], "rolled_back")
        self.assertEqual(canvas.state, before)
        self.assertTrue(canvas.dirty)


if __name__ == "__main__":
    unittest.main()
