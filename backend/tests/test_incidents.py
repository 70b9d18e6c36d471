from datetime import timedelta

import pytest

from claridad.errors import NotFound, StoreUnavailable, ValidationError
from claridad.incident_types import IncidentTypeCatalog
from claridad.incidents import validate_point
from claridad.schemas import MessageKind

POINT = [-57.55, -38.0]


@pytest.fixture
def incidents(services):
    return services.incidents


def create(incidents, **overrides):
    args = dict(
        type="robo",
        description="Robo en la esquina",
        neighborhood="Centro",
        chat_id="chat_centro",
        point=POINT,
    )
    args.update(overrides)
    return incidents.create(**args)


class TestCreate:
    def test_default_window_and_index_entry(self, incidents, store, clock):
        created = create(incidents)
        assert created.expires_at == clock.now + timedelta(minutes=60)
        assert created.warnings == []
        [entry] = store.get_chat("chat_centro")["activeIncidents"]
        assert entry["incidentId"] == created.incident_id
        assert entry["type"] == "robo"
        assert entry["expiresAt"] == created.expires_at

    def test_system_message_posted(self, incidents, services):
        created = create(incidents, active_for_minutes=30)
        [message] = services.bus.list("chat_centro")
        assert message.user_id == "system"
        assert message.type == MessageKind.incident
        assert message.message == "New incident: Robbery - Robo en la esquina (expires in 30 min)"
        assert message.metadata["incidentId"] == created.incident_id
        assert message.metadata["event"] == "created"
        assert message.metadata["incident"]["type"] == "robo"

    def test_record_is_readable(self, incidents):
        created = create(incidents, tags=["night"], created_by="7")
        incident = incidents.get(created.incident_id)
        assert incident.status == "active"
        assert incident.location == {"type": "Point", "coordinates": POINT}
        assert incident.tags == ["night"]
        assert incident.created_by == "7"

    def test_zero_minutes_is_immediately_expired(self, incidents, services):
        created = create(incidents, active_for_minutes=0)
        assert incidents.list_active("chat_centro") == []
        assert incidents.get(created.incident_id).status == "expired"
        assert services.bus.count("chat_centro") == 1

    def test_expiry_is_lazy(self, incidents, clock):
        created = create(incidents, active_for_minutes=10)
        clock.advance(minutes=9, seconds=59)
        assert [i.incident_id for i in incidents.list_active("chat_centro")] == [created.incident_id]
        clock.advance(seconds=1)
        assert incidents.list_active("chat_centro") == []
        assert incidents.get(created.incident_id).status == "expired"

    def test_regional_type(self, incidents):
        assert create(incidents, type="motochorro").incident_id

    @pytest.mark.parametrize(
        "overrides",
        [
            {"type": "alien"},
            {"type": "portonazo"},
            {"point": [-57.5]},
            {"point": ["x", -38.0]},
            {"point": [200.0, -38.0]},
            {"point": [-57.5, 91]},
            {"point": [True, -38.0]},
            {"description": "  "},
            {"chat_id": ""},
            {"active_for_minutes": -1},
        ],
    )
    def test_invalid_input_writes_nothing(self, incidents, store, overrides):
        with pytest.raises(ValidationError):
            create(incidents, **overrides)
        assert store.incidents.count_documents({}) == 0
        assert store.messages.count_documents({}) == 0
        assert store.get_chat("chat_centro") is None

    def test_index_failure_is_a_warning(self, incidents, store, monkeypatch):
        def broken(*args, **kwargs):
            raise StoreUnavailable("realtime", "timeout")

        monkeypatch.setattr(store, "push_active_incident", broken)
        created = create(incidents)
        assert len(created.warnings) == 1
        assert "active incident index" in created.warnings[0]
        assert incidents.get(created.incident_id).status == "active"

    def test_message_failure_is_a_warning(self, incidents, services, monkeypatch):
        def broken(*args, **kwargs):
            raise StoreUnavailable("realtime", "timeout")

        monkeypatch.setattr(services.bus, "append", broken)
        created = create(incidents)
        assert "system message" in created.warnings[0]
        assert len(incidents.list_active("chat_centro")) == 1


class TestReads:
    def test_unknown_incident(self, incidents):
        with pytest.raises(NotFound):
            incidents.get("nope")

    def test_active_for_unknown_chat(self, incidents):
        with pytest.raises(NotFound):
            incidents.list_active("chat_nowhere")

    def test_sweep_expired(self, incidents, store, clock):
        short = create(incidents, active_for_minutes=5)
        long = create(incidents, active_for_minutes=120)
        clock.advance(minutes=10)
        assert incidents.sweep_expired() == 1
        entries = store.get_chat("chat_centro")["activeIncidents"]
        assert [e["incidentId"] for e in entries] == [long.incident_id]
        assert store.incidents.find_one({"_id": short.incident_id})["status"] == "expired"
        assert incidents.sweep_expired() == 0


class TestCatalog:
    def test_regions_extend_base_types(self):
        argentina = IncidentTypeCatalog.for_region("argentina")
        general = IncidentTypeCatalog.for_region("general")
        assert "motochorro" in argentina and "motochorro" not in general
        assert set(general.ids()) < set(argentina.ids())

    def test_iterates_most_severe_first(self):
        priorities = [t.priority for t in IncidentTypeCatalog.for_region("mexico")]
        assert priorities == sorted(priorities, reverse=True)

    def test_unknown_region(self):
        with pytest.raises(ValueError):
            IncidentTypeCatalog.for_region("atlantis")


def test_validate_point_returns_floats():
    assert validate_point((1, 2)) == (1.0, 2.0)
