"""Model defaults."""

from planbar import db
from planbar.models import Ticket


class TestTimestamps:
    def test_defaults_are_timezone_aware(self):
        t = Ticket(title="Relaunch", created_by_id=1)
        assert t.created_at.tzinfo is not None
        assert t.updated_at.tzinfo is not None

    def test_insert_with_default_timestamps(self, engine):
        with db.get_session() as session:
            t = Ticket(title="Relaunch", created_by_id=1)
            session.add(t)
            session.commit()
            session.refresh(t)
            assert t.id is not None
            assert t.created_at is not None
