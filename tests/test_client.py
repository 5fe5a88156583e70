"""
Tests for the metadata client: candidate fallback, missing vs unreachable,
JSON validation and the on-disk TTL cache.
"""

import json
import time

import pytest
import requests

from conftest import FakeResponse, FakeSession
from mcruntime.client import MetadataClient
from mcruntime.exceptions import MissingMetadataFailure, NetworkFailure

PRIMARY = "https://piston-meta.mojang.com/mc/game/version_manifest_v2.json"
TWIN = "https://launchermeta.mojang.com/mc/game/version_manifest_v2.json"


def _client(routes, tmp_path=None, **kwargs):
    session = FakeSession(routes)
    sleeps = []
    client = MetadataClient(session, sleep=sleeps.append,
                            cache_dir=(tmp_path / "meta") if tmp_path else None, **kwargs)
    return client, session, sleeps


# ═══════════════════════════════════════════════════════════════════
#  Candidate fallback
# ═══════════════════════════════════════════════════════════════════


class TestFallback:
    def test_first_candidate(self):
        """First answering candidate wins; JSON decoded."""
        client, session, _ = _client({PRIMARY: '{"latest": {}}'})
        assert client.get_json([PRIMARY, TWIN]) == {"latest": {}}
        assert session.calls == [PRIMARY]
        assert client.network_requests == 1

    def test_twin_after_server_error(self):
        """5xx on the primary falls through to the twin in the same pass."""
        client, session, sleeps = _client({PRIMARY: FakeResponse(503), TWIN: '{"ok": true}'})
        assert client.get_json([PRIMARY, TWIN]) == {"ok": True}
        assert session.calls == [PRIMARY, TWIN]
        assert sleeps == []

    def test_malformed_json_is_a_failed_candidate(self):
        """A candidate with broken JSON is skipped for the next one."""
        client, _, _ = _client({PRIMARY: "<html>oops</html>", TWIN: "[1]"})
        assert client.get_json([PRIMARY, TWIN]) == [1]

    def test_connection_error_retried(self):
        """Transport errors are retried after backoff."""
        client, session, sleeps = _client({PRIMARY: [requests.ConnectionError("reset"), '{"a": 1}']})
        assert client.get_json(PRIMARY) == {"a": 1}
        assert len(session.calls) == 2
        assert len(sleeps) == 1


# ═══════════════════════════════════════════════════════════════════
#  Missing vs unreachable
# ═══════════════════════════════════════════════════════════════════


class TestFailures:
    def test_all_404_is_missing(self):
        """Every candidate 404 → MissingMetadataFailure after a single pass."""
        client, session, sleeps = _client({})
        with pytest.raises(MissingMetadataFailure):
            client.get_text([PRIMARY, TWIN])
        assert session.calls == [PRIMARY, TWIN]
        assert sleeps == []

    def test_mixed_is_network_failure(self):
        """404 + persistent 500 → NetworkFailure listing all endpoints tried."""
        client, _, sleeps = _client({TWIN: FakeResponse(500)}, max_retries=2)
        with pytest.raises(NetworkFailure) as excinfo:
            client.get_text([PRIMARY, TWIN])
        urls = [u for u, _ in excinfo.value.endpoints]
        assert urls == [PRIMARY, TWIN, TWIN]
        assert len(sleeps) == 1

    def test_optional(self):
        """get_text_optional maps missing to None."""
        client, _, _ = _client({})
        assert client.get_text_optional(PRIMARY) is None

    def test_retry_after(self):
        """429 waits at least Retry-After before the next pass."""
        client, _, sleeps = _client({PRIMARY: [FakeResponse(429, headers={"Retry-After": "5"}), "ok"]})
        assert client.get_text(PRIMARY) == "ok"
        assert sleeps[0] >= 5.0

    def test_no_candidates(self):
        """Empty candidate list is a programming error."""
        client, _, _ = _client({})
        with pytest.raises(ValueError):
            client.get_text([])


# ═══════════════════════════════════════════════════════════════════
#  On-disk cache
# ═══════════════════════════════════════════════════════════════════


class TestCache:
    def test_fresh_hit_skips_network(self, tmp_path):
        """A fresh cached body is served without a request."""
        client, session, _ = _client({PRIMARY: '{"v": 1}'}, tmp_path)
        assert client.get_json(PRIMARY, cache=True) == {"v": 1}
        assert client.get_json(PRIMARY, cache=True) == {"v": 1}
        assert session.calls == [PRIMARY]

    def test_expired_refetched(self, tmp_path):
        """An entry older than the ttl goes to the network."""
        client, session, _ = _client({PRIMARY: '{"v": 2}'}, tmp_path)
        client._save_cache(PRIMARY, '{"v": 1}')
        entry = tmp_path / "meta" / client._cache_key_for(PRIMARY)
        data = json.loads(entry.read_text(encoding="utf-8"))
        data["timestamp"] = int(time.time()) - 100
        entry.write_text(json.dumps(data), encoding="utf-8")
        assert client.get_json(PRIMARY, cache=True, ttl=10) == {"v": 2}
        assert session.calls == [PRIMARY]

    def test_stale_served_when_offline(self, tmp_path):
        """Upstream down → stale cached copy instead of an error."""
        client, _, _ = _client({PRIMARY: FakeResponse(503)}, tmp_path, max_retries=1)
        client._save_cache(PRIMARY, '{"v": "old"}')
        entry = tmp_path / "meta" / client._cache_key_for(PRIMARY)
        old = time.time() - 10_000
        data = json.loads(entry.read_text(encoding="utf-8"))
        data["timestamp"] = int(old)
        entry.write_text(json.dumps(data), encoding="utf-8")
        assert client.get_json(PRIMARY, cache=True, ttl=60) == {"v": "old"}

    def test_corrupt_entry_dropped(self, tmp_path):
        """Unparseable cache files are removed and the network used."""
        client, _, _ = _client({PRIMARY: '"fresh"'}, tmp_path)
        entry = tmp_path / "meta" / client._cache_key_for(PRIMARY)
        entry.parent.mkdir(parents=True)
        entry.write_text("{nope", encoding="utf-8")
        assert client.get_json(PRIMARY, cache=True) == "fresh"
        assert json.loads(entry.read_text(encoding="utf-8"))["payload"] == '"fresh"'
