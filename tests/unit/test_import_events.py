from dataclasses import replace

from eventlens.core.errors import store_error
from eventlens.services.event_store import EventFilter, EventStore
from eventlens.services.ingestion import IngestionPipeline
from scripts.import_events import import_csv

CSV_TEXT = """name,timestamp,session_id,principal_id,properties_json
page_view,2024-03-01T10:00:00Z,s1,u1,"{""page"": ""/home""}"
bad name!,2024-03-01T10:00:01Z,s1,u1,
signup,2024-03-01T10:00:02Z,s2,u2,
"""


class SessionlessStore(EventStore):
    """Stores events but refuses to update session ``s2``"""

    def upsert_session(self, session_id, **kwargs):
        if session_id == "s2":
            raise store_error("upsert_session failed: IntegrityError", operation="upsert_session")
        return super().upsert_session(session_id, **kwargs)


def test_import_reports_rejected_rows_and_session_errors(services, clock, tmp_path, capsys):
    path = tmp_path / "events.csv"
    path.write_text(CSV_TEXT, encoding="utf-8")
    store = SessionlessStore(services.engine)
    services = replace(services, store=store, ingestion=IngestionPipeline(store, clock=clock))

    totals = import_csv(str(path), services=services)

    assert totals == {"processed": 3, "inserted": 2, "rejected": 1, "session_errors": 1}
    assert store.count(EventFilter()) == 2
    assert store.get_session("s1").event_count == 1

    output = capsys.readouterr().out
    assert "Error on row 3" in output
    assert "Session s2 not updated: upsert_session failed: IntegrityError" in output
    assert "Session update errors: 1" in output
