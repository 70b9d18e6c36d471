import pytest

from claridad.errors import NotAssigned, NotFound, StoreUnavailable
from claridad.schemas import GeoPoint, MessageKind


@pytest.fixture
def panic(services):
    return services.panic


class TestRaise:
    async def test_without_gps_uses_block_and_lot(self, panic, services, make_member):
        user = await make_member("ana@claridad.org", block_number="15", lot_number="8")
        raised = await panic.raise_alert(user.id)
        assert raised.chat_id == "chat_bosque_peralta_ramos"
        assert raised.warnings == []

        message = services.bus.get(raised.message_id)
        assert message.type == MessageKind.panic
        assert "Block 15, Lot 8" in message.message
        assert message.metadata["hasGps"] is False
        assert message.metadata["gpsLocation"] == "unavailable"
        assert message.metadata["neighborhood"] == "Bosque Peralta Ramos"

        [alert] = await panic.recent_alerts("chat_bosque_peralta_ramos")
        assert alert.id == raised.alert_id
        assert alert.status == "active"
        assert alert.message_id == raised.message_id

    async def test_address_wins_over_coordinates(self, panic, services, make_member):
        user = await make_member("ana@claridad.org")
        raised = await panic.raise_alert(user.id, GeoPoint(lat=-38.0, lng=-57.55), "Av. Colón 1234")
        message = services.bus.get(raised.message_id)
        assert "📍 Av. Colón 1234" in message.message
        assert message.metadata["gpsLocation"] == "-38.0,-57.55"
        assert message.metadata["hasGps"] is True

    async def test_coordinates_when_no_address(self, panic, services, make_member):
        user = await make_member("ana@claridad.org")
        raised = await panic.raise_alert(user.id, GeoPoint(lat=-38.0, lng=-57.55))
        assert "-38.000000, -57.550000" in services.bus.get(raised.message_id).message

    async def test_summary_is_marked_urgent(self, panic, store, make_member):
        user = await make_member("ana@claridad.org")
        await panic.raise_alert(user.id)
        assert store.get_chat("chat_bosque_peralta_ramos")["lastMessage"].startswith("🚨 ")

    async def test_unassigned_user_rejected(self, panic, directory, store):
        user = await directory.create_user("ana@claridad.org", "Ana")
        with pytest.raises(NotAssigned):
            await panic.raise_alert(user.id)
        assert store.messages.count_documents({}) == 0

    async def test_tracking_failure_is_a_warning(self, panic, services, make_member, monkeypatch):
        user = await make_member("ana@claridad.org")

        async def broken(*args, **kwargs):
            raise StoreUnavailable("directory")

        monkeypatch.setattr(panic, "_track", broken)
        raised = await panic.raise_alert(user.id)
        assert raised.alert_id is None
        assert len(raised.warnings) == 1
        assert services.bus.count(raised.chat_id) == 1

    async def test_message_failure_still_tracks_then_raises(self, panic, services, make_member, monkeypatch):
        user = await make_member("ana@claridad.org")

        def broken(*args, **kwargs):
            raise StoreUnavailable("realtime", "timeout")

        monkeypatch.setattr(services.bus, "append", broken)
        with pytest.raises(StoreUnavailable):
            await panic.raise_alert(user.id)
        [alert] = await panic.recent_alerts("chat_bosque_peralta_ramos")
        assert alert.message_id is None


class TestNotifications:
    async def test_neighbors_notified_except_sender(self, panic, dispatcher, make_member):
        ana = await make_member("ana@claridad.org", name="Ana")
        beto = await make_member("beto@claridad.org", name="Beto")
        await make_member("caro@claridad.org", name="Caro", notifications_enabled=False)
        await make_member("dani@claridad.org", neighborhood="Centro", name="Dani")

        await panic.raise_alert(ana.id, address="Calle 1")
        [(targets, notification)] = dispatcher.sent
        assert targets == [beto.id]
        assert notification.priority == "high"
        assert notification.body == "Calle 1"
        assert notification.data["chatId"] == "chat_bosque_peralta_ramos"

    async def test_dispatcher_errors_do_not_fail_the_alert(self, panic, make_member, monkeypatch):
        ana = await make_member("ana@claridad.org")
        await make_member("beto@claridad.org")

        def broken(user_ids, notification):
            raise RuntimeError("push gateway down")

        monkeypatch.setattr(panic.dispatcher, "send", broken)
        raised = await panic.raise_alert(ana.id)
        assert raised.message_id


class TestRecentAndResolve:
    async def test_recent_window(self, panic, make_member, clock):
        user = await make_member("ana@claridad.org")
        await panic.raise_alert(user.id)
        clock.advance(hours=25)
        latest = await panic.raise_alert(user.id)
        assert [a.id for a in await panic.recent_alerts("chat_bosque_peralta_ramos")] == [latest.alert_id]

    async def test_resolve_is_idempotent(self, panic, make_member, clock):
        user = await make_member("ana@claridad.org")
        raised = await panic.raise_alert(user.id)
        alert = await panic.resolve(raised.alert_id, user.id, "false alarm")
        assert alert.status == "resolved"
        clock.advance(minutes=5)
        again = await panic.resolve(raised.alert_id, user.id)
        assert again.resolution_note == "false alarm"
        assert await panic.recent_alerts("chat_bosque_peralta_ramos") == []

    async def test_resolve_unknown(self, panic):
        with pytest.raises(NotFound):
            await panic.resolve(404, 1)


class TestNeighborhoodSpelling:
    async def test_alerts_shared_across_spellings(self, panic, make_member):
        ana = await make_member("ana@claridad.org", "Bosque Peralta Ramos")
        beto = await make_member("beto@claridad.org", "bosque peralta ramos")
        assert beto.chat_id == ana.chat_id

        raised = await panic.raise_alert(ana.id)
        assert [a.id for a in await panic.recent_alerts(beto.chat_id)] == [raised.alert_id]
