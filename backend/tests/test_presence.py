from datetime import timedelta

import pytest


@pytest.fixture
def presence(services):
    return services.presence


class TestPresence:
    def test_set_online_is_idempotent(self, presence, store):
        presence.set_online("chat_centro", "1", "Ana")
        presence.set_online("chat_centro", "1", "Ana")
        assert store.online_users.count_documents({"chatId": "chat_centro"}) == 1
        active = presence.list_active("chat_centro")
        assert [r.user_id for r in active.online] == ["1"]

    def test_partition_by_age(self, presence, clock):
        presence.set_online("chat_centro", "old", "Old")
        clock.advance(seconds=240)
        presence.set_online("chat_centro", "away", "Away")
        clock.advance(seconds=50)
        presence.set_online("chat_centro", "fresh", "Fresh")
        clock.advance(seconds=20)
        # ages: old 310s, away 70s, fresh 20s
        active = presence.list_active("chat_centro")
        assert [r.user_id for r in active.online] == ["fresh"]
        assert [r.user_id for r in active.away] == ["away"]

    def test_threshold_boundaries(self, presence, clock):
        presence.set_online("chat_centro", "1", "Ana")
        clock.advance(seconds=59)
        assert len(presence.list_active("chat_centro").online) == 1
        clock.advance(seconds=1)
        active = presence.list_active("chat_centro")
        assert active.online == [] and len(active.away) == 1
        clock.advance(seconds=240)
        active = presence.list_active("chat_centro")
        assert active.online == [] and active.away == []

    def test_set_offline_backdates_record(self, presence, store, clock):
        presence.set_online("chat_centro", "1", "Ana")
        presence.set_offline("chat_centro", "1")
        active = presence.list_active("chat_centro")
        assert active.online == [] and active.away == []
        record = store.online_users.find_one({"chatId": "chat_centro"})
        assert record["lastSeen"] == clock.now - timedelta(seconds=300)
        assert record["userName"] == "Ana"

    def test_unknown_name_defaults(self, presence):
        presence.set_online("chat_centro", "1")
        assert presence.list_active("chat_centro").online[0].user_name == "User"

    def test_heartbeat_revives_away_user(self, presence, clock):
        presence.set_online("chat_centro", "1", "Ana")
        clock.advance(seconds=120)
        presence.set_online("chat_centro", "1")
        assert len(presence.list_active("chat_centro").online) == 1

    def test_purge_stale(self, presence, clock):
        presence.set_online("chat_centro", "1", "Ana")
        clock.advance(hours=25)
        presence.set_online("chat_centro", "2", "Beto")
        assert presence.purge_stale() == (1, 0)


class TestTyping:
    def test_typing_expires_after_ttl(self, presence, clock):
        presence.set_typing("chat_centro", "1", "Ana")
        clock.advance(seconds=9)
        assert [r.user_id for r in presence.list_typing("chat_centro")] == ["1"]
        clock.advance(seconds=1)
        assert presence.list_typing("chat_centro") == []

    def test_clear_typing(self, presence):
        presence.set_typing("chat_centro", "1", "Ana")
        presence.clear_typing("chat_centro", "1")
        assert presence.list_typing("chat_centro") == []

    def test_exclude_caller(self, presence):
        presence.set_typing("chat_centro", "1", "Ana")
        presence.set_typing("chat_centro", "2", "Beto")
        assert [r.user_id for r in presence.list_typing("chat_centro", exclude_user="1")] == ["2"]

    def test_one_record_per_user(self, presence, store, clock):
        presence.set_typing("chat_centro", "1", "Ana")
        clock.advance(seconds=8)
        presence.set_typing("chat_centro", "1", "Ana")
        clock.advance(seconds=8)
        assert store.typing_users.count_documents({}) == 1
        assert len(presence.list_typing("chat_centro")) == 1

    def test_purge_expired_typing(self, presence, clock):
        presence.set_typing("chat_centro", "1", "Ana")
        clock.advance(seconds=30)
        assert presence.purge_stale("chat_centro") == (0, 1)
