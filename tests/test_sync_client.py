import threading
import time

import pytest
import requests
from conftest import FakeResponse, FakeSession

from savedvariables_parser import KeystoneRecord
from sync_client import (
    SYNC_PATH,
    SyncClient,
    SyncError,
    SyncLog,
    normalize_base_url,
    summarize_records,
)


def _records():
    return [
        KeystoneRecord("foo", "silvermoon", 14, "Ara-Kara"),
        KeystoneRecord("bar", "kazzak", 12, "MapID:503", source="bigwigs", map_id=503),
    ]


@pytest.fixture
def sync_log(tmp_path):
    return SyncLog(str(tmp_path / "logs" / "sync-debug.log"))


def _log_text(sync_log):
    with open(sync_log.path, encoding="utf-8") as f:
        return f.read()


class TestNormalizeBaseUrl:
    def test_variants(self) -> None:
        assert normalize_base_url("http://host:3334") == "http://host:3334"
        assert normalize_base_url("http://host:3334/") == "http://host:3334"
        assert normalize_base_url("http://host:3334/api") == "http://host:3334"
        assert normalize_base_url("http://host:3334/api/mythic/sync-addon") == "http://host:3334"
        assert normalize_base_url("  http://host:3334/api/  ") == "http://host:3334"
        assert normalize_base_url("") == ""


class TestSyncClient:
    def test_requires_url(self) -> None:
        with pytest.raises(ValueError):
            SyncClient(["", "  "], session=FakeSession([]))

    def test_success_posts_whole_batch(self, sync_log) -> None:
        session = FakeSession([FakeResponse(200, {"success": True, "message": "Synced 2 keys"})])
        client = SyncClient(["http://localhost:3334/api"], sync_log=sync_log, timeout=7, session=session)

        ack = client.send(_records())

        assert ack.status == 200
        assert ack.message == "Synced 2 keys"
        assert ack.url == "http://localhost:3334" + SYNC_PATH
        assert len(session.calls) == 1
        call = session.calls[0]
        assert call["url"] == "http://localhost:3334/api/mythic/sync-addon"
        assert call["timeout"] == 7
        assert call["json"]["keys"][0] == {
            "name": "foo",
            "realm": "silvermoon",
            "level": 14,
            "dungeon": "Ara-Kara",
            "timestamp": None,
            "source": "addon",
            "isFromBag": True,
        }
        assert call["json"]["keys"][1]["mapId"] == 503
        assert session.headers["Content-Type"] == "application/json"

        text = _log_text(sync_log)
        assert "[INFO] Enviando 2 keys" in text
        assert "Synced 2 keys" in text

    def test_empty_batch_is_still_sent(self, sync_log) -> None:
        session = FakeSession([FakeResponse(200, {"success": True, "message": "Synced 0 keys"})])
        client = SyncClient(["http://localhost:3334"], sync_log=sync_log, session=session)

        client.send([])

        assert session.calls[0]["json"] == {"keys": []}

    def test_transport_error_raises_and_logs(self, sync_log) -> None:
        session = FakeSession([requests.ConnectionError("connection refused")])
        client = SyncClient(["http://localhost:3334"], sync_log=sync_log, session=session)

        with pytest.raises(SyncError) as exc:
            client.send(_records())

        assert exc.value.status is None
        assert "connection refused" in exc.value.detail
        assert len(session.calls) == 1
        text = _log_text(sync_log)
        assert "[ERROR] Upload fallido" in text
        assert "foo-silvermoon +14" in text

    def test_http_error_carries_status(self, sync_log) -> None:
        session = FakeSession([FakeResponse(400, {"error": "Invalid keys data"})])
        client = SyncClient(["http://localhost:3334"], sync_log=sync_log, max_attempts=3, session=session)

        with pytest.raises(SyncError) as exc:
            client.send(_records())

        assert exc.value.status == 400
        assert exc.value.detail == "Invalid keys data"
        # 4xx no se reintenta
        assert len(session.calls) == 1

    def test_non_json_error_body(self) -> None:
        session = FakeSession([FakeResponse(502, None, text="Bad Gateway")])
        client = SyncClient(["http://localhost:3334"], session=session)

        with pytest.raises(SyncError) as exc:
            client.send(_records())

        assert exc.value.status == 502
        assert exc.value.detail == "Bad Gateway"

    def test_failover_to_next_url(self, sync_log) -> None:
        session = FakeSession([
            requests.ConnectionError("down"),
            FakeResponse(200, {"success": True, "message": "Synced 2 keys"}),
        ])
        client = SyncClient(["http://primary:3334", "http://backup:3334"], sync_log=sync_log, session=session)

        ack = client.send(_records())

        assert ack.url == "http://backup:3334" + SYNC_PATH
        assert [c["url"] for c in session.calls] == [
            "http://primary:3334" + SYNC_PATH,
            "http://backup:3334" + SYNC_PATH,
        ]
        text = _log_text(sync_log)
        assert "Upload fallido a http://primary:3334" in text
        assert "Respuesta del backend (200" in text

    def test_retry_with_backoff(self) -> None:
        sleeps = []
        session = FakeSession([
            FakeResponse(500, {"error": "boom"}),
            requests.Timeout("slow"),
            FakeResponse(200, {"message": "Synced 2 keys"}),
        ])
        client = SyncClient(["http://localhost:3334"], max_attempts=3, session=session, sleep=sleeps.append)

        ack = client.send(_records())

        assert ack.status == 200
        assert len(session.calls) == 3
        assert sleeps == pytest.approx([1.0, 1.6])

    def test_no_retry_by_default(self) -> None:
        sleeps = []
        session = FakeSession([FakeResponse(503, {"error": "busy"})])
        client = SyncClient(["http://localhost:3334"], session=session, sleep=sleeps.append)

        with pytest.raises(SyncError):
            client.send(_records())

        assert sleeps == []

    def test_list_body_is_wrapped(self) -> None:
        session = FakeSession([FakeResponse(200, [1, 2])])
        client = SyncClient(["http://localhost:3334"], session=session)

        ack = client.send(_records())

        assert ack.body == {"data": [1, 2]}
        assert ack.message == ""

    def test_concurrent_sends_share_session_one_at_a_time(self) -> None:
        session = SlowSession(delay=0.05)
        client = SyncClient(["http://localhost:3334"], session=session)
        errors = []

        def _send():
            try:
                client.send(_records())
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=_send) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)

        assert errors == []
        assert session.calls == 4
        assert session.max_active == 1

    def test_without_endpoints_raises_sync_error(self) -> None:
        client = SyncClient(["http://localhost:3334"], session=FakeSession([]))
        client.base_urls = []

        with pytest.raises(SyncError, match="sin endpoints"):
            client.send(_records())


class SlowSession:
    def __init__(self, delay: float):
        self.delay = delay
        self.headers = {}
        self.calls = 0
        self.active = 0
        self.max_active = 0
        self._guard = threading.Lock()

    def post(self, url, json=None, timeout=None):
        with self._guard:
            self.calls += 1
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        time.sleep(self.delay)
        with self._guard:
            self.active -= 1
        return FakeResponse(200, {"message": "ok"})


class TestHelpers:
    def test_summarize_records(self) -> None:
        recs = [KeystoneRecord(f"c{i}", "r", i + 1, "D") for i in range(12)]

        assert summarize_records([]) == "sin keys"
        assert summarize_records(recs[:2]) == "c0-r +1, c1-r +2"
        assert summarize_records(recs).endswith("... (+2)")

    def test_sync_log_appends(self, tmp_path) -> None:
        log = SyncLog(str(tmp_path / "nested" / "dir" / "sync.log"))

        log.write("uno")
        log.write("dos", level="ERROR")

        lines = _log_text(log).splitlines()
        assert len(lines) == 2
        assert lines[0].endswith("[INFO] uno")
        assert lines[1].endswith("[ERROR] dos")
