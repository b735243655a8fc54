import random
import unittest

from nexsy.delivery import DeliveryEngine
from nexsy.errors import PersistenceError
from nexsy.messages import MessageStore
from nexsy.models import DELIVERED, SEEN, SENT
from nexsy.presence import PresenceRegistry
from nexsy.users import UserStore

from .clock import FakeClock

_RANK = {SENT: 0, DELIVERED: 1, SEEN: 2}


class FailingMessageStore(MessageStore):
    """Raises PersistenceError from the named methods."""

    def __init__(self, *failing):
        super().__init__()
        self.failing = set(failing or ("insert",))

    def _check(self, name):
        if name in self.failing:
            raise PersistenceError("disk full")

    async def insert(self, sender, receiver, text, at_ms):
        self._check("insert")
        return await super().insert(sender, receiver, text, at_ms)

    async def mark_seen(self, sender, receiver, at_ms):
        self._check("mark_seen")
        return await super().mark_seen(sender, receiver, at_ms)

    async def archive(self, message, at_ms):
        self._check("archive")
        return await super().archive(message, at_ms)

    async def soft_delete(self, message_id, at_ms):
        self._check("soft_delete")
        return await super().soft_delete(message_id, at_ms)


class FailingUserStore(UserStore):
    def __init__(self):
        super().__init__()
        self.failing_users = set()

    async def set_presence(self, username, online, at_ms):
        if username in self.failing_users:
            raise PersistenceError("disk full")
        return await super().set_presence(username, online, at_ms)


class DeliveryEngineTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.users = UserStore()
        self.messages = MessageStore()
        self.registry = PresenceRegistry()
        self.engine = DeliveryEngine(self.registry, self.users, self.messages, now_func=self.clock.now)
        for name in ("amy", "bob"):
            await self.users.create(name, "!", at_ms=0)

    def _by_event(self, notifications):
        return {notification.event: notification for notification in notifications}

    async def _send(self, conn="bob-1", sender="bob", receiver="amy", text="hi"):
        return await self.engine.dispatch(conn, "send_message", {"sender": sender, "receiver": receiver, "text": text})

    async def test_register_marks_online_and_broadcasts_views(self):
        notifications = await self.engine.dispatch("amy-1", "registerUser", {"username": "amy"})

        events = self._by_event(notifications)
        self.assertEqual(events["onlineUsers"].payload, ["amy"])
        self.assertTrue(events["onlineUsers"].is_broadcast)
        roster = {user["username"]: user for user in events["allUsers"].payload}
        self.assertTrue(roster["amy"]["isOnline"])
        self.assertFalse(roster["bob"]["isOnline"])
        self.assertTrue((await self.users.get("amy")).is_online)

    async def test_register_unknown_user_is_rejected(self):
        notifications = await self.engine.dispatch("x-1", "registerUser", {"username": "zed"})

        self.assertEqual(len(notifications), 1)
        self.assertEqual(notifications[0].event, "error")
        self.assertEqual(notifications[0].targets, frozenset({"x-1"}))
        self.assertEqual(notifications[0].payload["code"], "not_found")
        self.assertFalse(self.registry.is_online("zed"))

    async def test_send_to_offline_receiver_stays_sent(self):
        notifications = await self._send()

        self.assertEqual([n.event for n in notifications], ["message_sent"])
        body = notifications[0].payload
        self.assertEqual(body["status"], SENT)
        self.assertIsNone(body["deliveredAt"])
        self.assertEqual(notifications[0].targets, frozenset({"bob-1"}))
        stored = await self.messages.get(body["id"])
        self.assertEqual(stored.status, SENT)
        self.assertIsNone(stored.delivered_at_ms)

    async def test_send_to_online_receiver_is_delivered_before_notification(self):
        await self.engine.dispatch("amy-1", "registerUser", {"username": "amy"})
        await self.engine.dispatch("bob-1", "registerUser", {"username": "bob"})
        self.clock.advance(1)

        notifications = await self._send()

        self.assertEqual([n.event for n in notifications], ["receive_message", "message_sent"])
        received, sent = notifications
        self.assertEqual(received.targets, frozenset({"amy-1"}))
        self.assertEqual(sent.targets, frozenset({"bob-1"}))
        self.assertEqual(received.payload["status"], DELIVERED)
        self.assertEqual(received.payload["deliveredAt"], self.clock.now())
        self.assertEqual(sent.payload, received.payload)

        stored = await self.messages.get(received.payload["id"])
        self.assertEqual(stored.status, DELIVERED)
        self.assertEqual(stored.delivered_at_ms, self.clock.now())

    async def test_send_reaches_every_connection_of_both_parties(self):
        for conn, name in (("amy-1", "amy"), ("amy-2", "amy"), ("bob-1", "bob"), ("bob-2", "bob")):
            await self.engine.dispatch(conn, "registerUser", {"username": name})

        received, sent = await self._send()

        self.assertEqual(received.targets, frozenset({"amy-1", "amy-2"}))
        self.assertEqual(sent.targets, frozenset({"bob-1", "bob-2"}))

    async def test_send_validation_happens_before_persistence(self):
        for payload in (
            {"sender": "bob", "receiver": "amy"},
            {"sender": "bob", "receiver": "amy", "text": "   "},
            {"sender": "", "receiver": "amy", "text": "hi"},
            {"sender": "bob", "receiver": 7, "text": "hi"},
        ):
            notifications = await self.engine.dispatch("bob-1", "send_message", payload)
            self.assertEqual(notifications[0].event, "error")
            self.assertEqual(notifications[0].payload["message"], "Missing message data")

        self.assertEqual(await self.messages.list_for_user("bob"), [])

    async def test_send_to_unknown_receiver_is_not_found(self):
        notifications = await self._send(receiver="ghost")

        self.assertEqual(notifications[0].payload["code"], "not_found")
        self.assertEqual(await self.messages.list_for_user("bob"), [])

    async def test_persistence_failure_reports_generic_error(self):
        engine = DeliveryEngine(self.registry, self.users, FailingMessageStore(), now_func=self.clock.now)

        with self.assertLogs("nexsy.delivery", level="ERROR"):
            notifications = await engine.dispatch("bob-1", "send_message", {"sender": "bob", "receiver": "amy", "text": "hi"})

        self.assertEqual(len(notifications), 1)
        self.assertEqual(notifications[0].targets, frozenset({"bob-1"}))
        self.assertEqual(notifications[0].payload, {"code": "server_error", "message": "Failed to send message"})

    async def test_unknown_event_and_non_object_payload(self):
        unknown = await self.engine.dispatch("bob-1", "launch_rockets", {})
        not_object = await self.engine.dispatch("bob-1", "send_message", ["bob", "amy", "hi"])

        self.assertEqual(unknown[0].payload["message"], "unknown event")
        self.assertEqual(not_object[0].payload["message"], "payload must be an object")

    async def test_mark_seen_without_eligible_messages_is_silent(self):
        await self.engine.dispatch("bob-1", "registerUser", {"username": "bob"})

        notifications = await self.engine.dispatch(
            "amy-1", "mark_messages_seen", {"sender": "bob", "receiver": "amy"}
        )

        self.assertEqual(notifications, [])

    async def test_mark_seen_updates_all_and_notifies_sender_once(self):
        await self.engine.dispatch("bob-1", "registerUser", {"username": "bob"})
        await self.engine.dispatch("bob-2", "registerUser", {"username": "bob"})
        for text in ("one", "two", "three"):
            await self._send(text=text)
        self.clock.advance(5)

        notifications = await self.engine.dispatch(
            "amy-1", "mark_messages_seen", {"sender": "bob", "receiver": "amy"}
        )

        self.assertEqual(len(notifications), 1)
        seen = notifications[0]
        self.assertEqual(seen.event, "messages_seen")
        self.assertEqual(seen.targets, frozenset({"bob-1", "bob-2"}))
        self.assertEqual(seen.payload["sender"], "bob")
        self.assertEqual(seen.payload["receiver"], "amy")
        self.assertEqual([m["text"] for m in seen.payload["messages"]], ["one", "two", "three"])
        for message in await self.messages.list_conversation("bob", "amy"):
            self.assertEqual(message.status, SEEN)
            self.assertEqual(message.seen_at_ms, self.clock.now())

        repeat = await self.engine.dispatch("amy-1", "mark_messages_seen", {"sender": "bob", "receiver": "amy"})
        self.assertEqual(repeat, [])

    async def test_mark_seen_only_touches_that_direction(self):
        await self._send(sender="bob", receiver="amy", text="to amy")
        await self._send(conn="amy-1", sender="amy", receiver="bob", text="to bob")

        await self.engine.dispatch("amy-1", "mark_messages_seen", {"sender": "bob", "receiver": "amy"})

        statuses = {m.text: m.status for m in await self.messages.list_conversation("amy", "bob")}
        self.assertEqual(statuses, {"to amy": SEEN, "to bob": SENT})

    async def test_message_delivered_ack_notifies_sender(self):
        await self.engine.dispatch("bob-1", "registerUser", {"username": "bob"})
        sent = await self._send()
        message_id = sent[0].payload["id"]

        notifications = await self.engine.dispatch("amy-1", "message_delivered", {"messageId": message_id})

        self.assertEqual(len(notifications), 1)
        self.assertEqual(notifications[0].event, "message_status_updated")
        self.assertEqual(notifications[0].targets, frozenset({"bob-1"}))
        self.assertEqual(notifications[0].payload["messageId"], message_id)
        self.assertEqual(notifications[0].payload["status"], DELIVERED)

        again = await self.engine.dispatch("amy-1", "message_delivered", {"messageId": message_id})
        self.assertEqual(again, [])

    async def test_message_delivered_unknown_id(self):
        notifications = await self.engine.dispatch("amy-1", "message_delivered", {"messageId": "m_missing"})

        self.assertEqual(notifications[0].event, "error")
        self.assertEqual(notifications[0].payload["code"], "not_found")

    async def test_typing_is_relayed_only_to_receiver(self):
        await self.engine.dispatch("amy-1", "registerUser", {"username": "amy"})
        await self.engine.dispatch("bob-1", "registerUser", {"username": "bob"})

        typing = await self.engine.dispatch("bob-1", "typing", {"sender": "bob", "receiver": "amy"})
        stopped = await self.engine.dispatch("bob-1", "stop_typing", {"sender": "bob", "receiver": "amy"})
        invalid = await self.engine.dispatch("bob-1", "typing", {"sender": "bob"})

        self.assertEqual(typing[0].event, "typing")
        self.assertEqual(typing[0].targets, frozenset({"amy-1"}))
        self.assertEqual(typing[0].payload, {"sender": "bob", "receiver": "amy"})
        self.assertEqual(stopped[0].event, "stop_typing")
        self.assertEqual(invalid[0].event, "error")

    async def test_delete_archives_once_and_hides_message(self):
        sent = await self._send(text="oops")
        message_id = sent[0].payload["id"]
        created_at = sent[0].payload["createdAt"]
        self.clock.advance(3)

        notifications = await self.engine.dispatch("bob-1", "delete_message", {"messageId": message_id})

        self.assertEqual(len(notifications), 1)
        self.assertEqual(notifications[0].event, "message_deleted")
        self.assertTrue(notifications[0].is_broadcast)
        self.assertEqual(notifications[0].payload, {"messageId": message_id})

        archived = await self.messages.archived(message_id)
        self.assertEqual(len(archived), 1)
        self.assertEqual(archived[0].text, "oops")
        self.assertEqual(archived[0].sent_at_ms, created_at)
        self.assertEqual(archived[0].deleted_at_ms, self.clock.now())

        self.assertIsNone(await self.messages.get(message_id))
        self.assertEqual(await self.messages.list_for_user("bob"), [])
        seen = await self.engine.dispatch("amy-1", "mark_messages_seen", {"sender": "bob", "receiver": "amy"})
        self.assertEqual(seen, [])

        again = await self.engine.dispatch("bob-1", "delete_message", {"messageId": message_id})
        self.assertEqual(again[0].payload["code"], "not_found")
        self.assertEqual(len(await self.messages.archived(message_id)), 1)

    async def test_update_last_seen_publishes_roster(self):
        self.clock.advance(60)

        notifications = await self.engine.dispatch("amy-1", "update_last_seen", {"username": "amy"})

        self.assertEqual(notifications[0].event, "allUsers")
        roster = {user["username"]: user for user in notifications[0].payload}
        self.assertEqual(roster["amy"]["lastSeen"], self.clock.now())

    async def test_disconnect_last_connection_goes_offline(self):
        await self.engine.dispatch("amy-1", "registerUser", {"username": "amy"})
        await self.engine.dispatch("amy-2", "registerUser", {"username": "amy"})

        self.assertEqual(await self.engine.disconnect("amy-1"), [])
        self.assertTrue((await self.users.get("amy")).is_online)

        self.clock.advance(30)
        notifications = await self.engine.disconnect("amy-2")

        events = self._by_event(notifications)
        self.assertEqual(events["onlineUsers"].payload, [])
        amy = await self.users.get("amy")
        self.assertFalse(amy.is_online)
        self.assertEqual(amy.last_seen_ms, self.clock.now())

    async def test_disconnect_of_unregistered_connection(self):
        self.assertEqual(await self.engine.disconnect("anon"), [])

    async def test_status_never_regresses_over_random_events(self):
        rng = random.Random(1337)
        conns = {"amy": "amy-1", "bob": "bob-1"}
        history: dict[str, list[str]] = {}
        stamps: dict[str, tuple] = {}

        for _ in range(300):
            self.clock.advance(0.01)
            sender, receiver = rng.choice([("amy", "bob"), ("bob", "amy")])
            action = rng.choice(["send", "seen", "delivered", "connect", "disconnect", "delete"])
            if action == "send":
                await self._send(conn=conns[sender], sender=sender, receiver=receiver, text="x")
            elif action == "seen":
                await self.engine.dispatch(conns[receiver], "mark_messages_seen", {"sender": sender, "receiver": receiver})
            elif action == "delivered" and history:
                message_id = rng.choice(sorted(history))
                await self.engine.dispatch(conns[receiver], "message_delivered", {"messageId": message_id})
            elif action == "connect":
                await self.engine.dispatch(conns[receiver], "registerUser", {"username": receiver})
            elif action == "disconnect":
                await self.engine.disconnect(conns[receiver])
            elif action == "delete" and history and rng.random() < 0.2:
                await self.engine.dispatch(conns[sender], "delete_message", {"messageId": rng.choice(sorted(history))})

            for message in self.messages._messages.values():
                statuses = history.setdefault(message.id, [])
                statuses.append(message.status)
                previous = stamps.get(message.id, (None, None))
                if previous[0] is not None:
                    self.assertEqual(message.delivered_at_ms, previous[0])
                if previous[1] is not None:
                    self.assertEqual(message.seen_at_ms, previous[1])
                stamps[message.id] = (message.delivered_at_ms, message.seen_at_ms)

        self.assertTrue(history)
        for statuses in history.values():
            ranks = [_RANK[status] for status in statuses]
            self.assertEqual(ranks, sorted(ranks))


class PersistenceFailureTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.registry = PresenceRegistry()

    async def _engine(self, users=None, messages=None):
        users = users or UserStore()
        for name in ("amy", "bob"):
            await users.create(name, "!", at_ms=0)
        return DeliveryEngine(self.registry, users, messages or MessageStore(), now_func=self.clock.now)

    def _assert_generic_error(self, notification, target, message):
        self.assertEqual(notification.event, "error")
        self.assertEqual(notification.targets, frozenset({target}))
        self.assertEqual(notification.payload, {"code": "server_error", "message": message})

    async def test_register_failure_still_publishes_online_users(self):
        users = FailingUserStore()
        engine = await self._engine(users=users)
        await engine.dispatch("bob-1", "registerUser", {"username": "bob"})
        users.failing_users.add("amy")

        with self.assertLogs("nexsy.delivery", level="ERROR") as logs:
            notifications = await engine.dispatch("amy-1", "registerUser", {"username": "amy"})

        self.assertEqual([n.event for n in notifications], ["onlineUsers", "error"])
        self.assertTrue(notifications[0].is_broadcast)
        self.assertEqual(notifications[0].payload, ["amy", "bob"])
        self._assert_generic_error(notifications[1], "amy-1", "Failed to register user")
        self.assertIn("failed to persist presence for amy", logs.output[0])
        self.assertTrue(self.registry.is_online("amy"))

        users.failing_users.clear()
        await engine.dispatch("amy-2", "registerUser", {"username": "amy"})
        self.assertTrue((await users.get("amy")).is_online)

    async def test_failed_offline_write_does_not_skip_new_identity(self):
        users = FailingUserStore()
        engine = await self._engine(users=users)
        await engine.dispatch("tab-1", "registerUser", {"username": "amy"})
        users.failing_users.add("amy")

        with self.assertLogs("nexsy.delivery", level="ERROR"):
            notifications = await engine.dispatch("tab-1", "registerUser", {"username": "bob"})

        self.assertEqual(notifications[0].payload, ["bob"])
        self._assert_generic_error(notifications[1], "tab-1", "Failed to register user")
        self.assertTrue((await users.get("bob")).is_online)
        self.assertFalse(self.registry.is_online("amy"))

    async def test_mark_seen_failure_reports_generic_error(self):
        messages = FailingMessageStore("mark_seen")
        engine = await self._engine(messages=messages)
        await engine.dispatch("bob-1", "registerUser", {"username": "bob"})
        sent = await engine.dispatch("bob-1", "send_message", {"sender": "bob", "receiver": "amy", "text": "hi"})
        message_id = sent[0].payload["id"]

        with self.assertLogs("nexsy.delivery", level="ERROR") as logs:
            notifications = await engine.dispatch("amy-1", "mark_messages_seen", {"sender": "bob", "receiver": "amy"})

        self.assertEqual(len(notifications), 1)
        self._assert_generic_error(notifications[0], "amy-1", "Failed to mark messages as seen")
        self.assertIn("mark_messages_seen", logs.output[0])
        self.assertEqual((await messages.get(message_id)).status, SENT)

    async def test_archive_failure_leaves_message_in_place(self):
        messages = FailingMessageStore("archive")
        engine = await self._engine(messages=messages)
        sent = await engine.dispatch("bob-1", "send_message", {"sender": "bob", "receiver": "amy", "text": "oops"})
        message_id = sent[0].payload["id"]

        with self.assertLogs("nexsy.delivery", level="ERROR"):
            notifications = await engine.dispatch("bob-1", "delete_message", {"messageId": message_id})

        self.assertEqual(len(notifications), 1)
        self._assert_generic_error(notifications[0], "bob-1", "Failed to delete message")
        self.assertIsNotNone(await messages.get(message_id))
        self.assertEqual(await messages.archived(message_id), [])

    async def test_soft_delete_failure_after_archive_then_retry(self):
        messages = FailingMessageStore("soft_delete")
        engine = await self._engine(messages=messages)
        sent = await engine.dispatch("bob-1", "send_message", {"sender": "bob", "receiver": "amy", "text": "oops"})
        message_id = sent[0].payload["id"]

        with self.assertLogs("nexsy.delivery", level="ERROR"):
            notifications = await engine.dispatch("bob-1", "delete_message", {"messageId": message_id})

        self.assertEqual([n.event for n in notifications], ["error"])
        self._assert_generic_error(notifications[0], "bob-1", "Failed to delete message")
        self.assertIsNotNone(await messages.get(message_id))
        self.assertEqual(len(await messages.archived(message_id)), 1)

        messages.failing.clear()
        retried = await engine.dispatch("bob-1", "delete_message", {"messageId": message_id})

        self.assertEqual([n.event for n in retried], ["message_deleted"])
        self.assertIsNone(await messages.get(message_id))
        self.assertEqual(len(await messages.archived(message_id)), 1)

    async def test_disconnect_failure_falls_back_to_online_users(self):
        users = FailingUserStore()
        engine = await self._engine(users=users)
        await engine.dispatch("amy-1", "registerUser", {"username": "amy"})
        users.failing_users.add("amy")

        with self.assertLogs("nexsy.delivery", level="ERROR") as logs:
            notifications = await engine.disconnect("amy-1")

        self.assertEqual([n.event for n in notifications], ["onlineUsers"])
        self.assertEqual(notifications[0].payload, [])
        self.assertIn("failed to persist offline transition for amy", logs.output[0])
        self.assertFalse(self.registry.is_online("amy"))
        self.assertTrue((await users.get("amy")).is_online)
