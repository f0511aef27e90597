"""
tests/test_cache.py — GuildCache Unit Tests
============================================

Event application, duplicate/gap handling and NOTIFY parsing, all without a
real PG connection.  The mirror tests drive the REST API and feed every
published event straight into the cache.
"""

from __future__ import annotations

import asyncio
import threading
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from nightwatch.database.serialize import guild_graph
from nightwatch.engine.cache import MAX_TRACKED_ORIGINS, GuildCache
from nightwatch.engine.events import ChangeEvent, EventType
from nightwatch.services import guild_service


def _event(event_type, payload, sequence, guild_id="g1", origin="api-1"):
    return ChangeEvent(
        type=EventType(event_type),
        guild_id=guild_id,
        payload=payload,
        origin=origin,
        sequence=sequence,
    )


def _empty_graph(guild_id="g1"):
    return {
        "id": guild_id,
        "name": "Nightwatch HQ",
        "date_created": None,
        "settings": {"guild_id": guild_id, "prefix": "!"},
        "users": [],
        "suggestions": [],
        "support_tickets": [],
        "self_assignable_roles": [],
        "playlist": [],
        "referrals": [],
    }


def _shape(graph: dict) -> dict:
    """Reduce a guild graph to ids and key fields for comparison."""
    return {
        "name": graph["name"],
        "prefix": (graph["settings"] or {}).get("prefix"),
        "users": sorted(
            (u["id"], u["level"], tuple(sorted(w["id"] for w in u["warnings"])),
             tuple(sorted(k["id"] for k in u["kicks"])))
            for u in graph["users"]
        ),
        "suggestions": sorted((s["id"], s["status"]) for s in graph["suggestions"]),
        "support_tickets": sorted(t["id"] for t in graph["support_tickets"]),
        "self_assignable_roles": sorted(r["role_id"] for r in graph["self_assignable_roles"]),
        "playlist": [s["id"] for s in graph["playlist"]],
        "referrals": sorted((r["id"], r["join_count"]) for r in graph["referrals"]),
    }


@pytest.fixture
def cache():
    """A GuildCache seeded with one empty guild; no DB needed."""
    c = GuildCache(MagicMock())
    c.apply(_event("guild-create", _empty_graph(), sequence=1))
    return c


class TestEventApplication:
    def test_guild_create_and_delete(self, cache):
        assert cache.guild_ids() == ["g1"]
        cache.apply(_event("guild-delete", {"guild_id": "g1"}, sequence=2))
        assert cache.guild_ids() == []
        assert cache.get_guild("g1") is None

    def test_settings_update_changes_prefix(self, cache):
        assert cache.get_prefix("g1", default="?") == "!"
        cache.apply(_event("settings-update", {"guild_id": "g1", "prefix": "$"}, sequence=2))
        assert cache.get_prefix("g1", default="?") == "$"
        assert cache.get_prefix("unknown", default="?") == "?"

    def test_create_update_delete_child(self, cache):
        cache.apply(_event("suggestion-create", {"id": 7, "status": "open"}, sequence=2))
        cache.apply(_event("suggestion-update", {"id": 7, "status": "resolved"}, sequence=3))
        assert cache.get_guild("g1")["suggestions"] == [{"id": 7, "status": "resolved"}]

        cache.apply(_event("suggestion-delete", {"guild_id": "g1", "suggestion_id": 7}, sequence=4))
        assert cache.get_guild("g1")["suggestions"] == []

    def test_delete_of_absent_child_is_harmless(self, cache):
        assert cache.apply(
            _event("support-ticket-delete", {"guild_id": "g1", "ticket_id": 99}, sequence=2)
        )
        assert cache.get_guild("g1")["support_tickets"] == []

    def test_user_delete_strips_records_they_issued(self, cache):
        def user(uid):
            return {"id": uid, "level": 0, "warnings": [], "kicks": []}

        cache.apply(_event("user-create", user("mod"), sequence=2))
        cache.apply(_event("user-create", user("u1"), sequence=3))
        cache.apply(_event(
            "warning-create",
            {"id": 1, "user_id": "u1", "issuer_id": "mod", "reason": "spam"},
            sequence=4,
        ))
        cache.apply(_event("user-delete", {"guild_id": "g1", "user_id": "mod"}, sequence=5))

        users = cache.get_guild("g1")["users"]
        assert [u["id"] for u in users] == ["u1"]
        assert users[0]["warnings"] == []

    def test_self_assignable_roles(self, cache):
        cache.apply(_event("self-assignable-role-create", {"id": 1, "role_id": "r1"}, sequence=2))
        assert cache.is_self_assignable("g1", "r1")
        cache.apply(_event(
            "self-assignable-role-delete", {"guild_id": "g1", "role_id": "r1"}, sequence=3,
        ))
        assert not cache.is_self_assignable("g1", "r1")

    def test_playlist_events(self, cache):
        cache.apply(_event("song-create", {"id": 2, "position": 1, "requested_by": "u2"}, sequence=2))
        cache.apply(_event("song-create", {"id": 1, "position": 0, "requested_by": "u1"}, sequence=3))
        assert [s["id"] for s in cache.get_guild("g1")["playlist"]] == [1, 2]

        cache.apply(_event("playlist-user-delete", {"guild_id": "g1", "user_id": "u1"}, sequence=4))
        assert [s["id"] for s in cache.get_guild("g1")["playlist"]] == [2]

        cache.apply(_event("playlist-clear", {"guild_id": "g1"}, sequence=5))
        assert cache.get_guild("g1")["playlist"] == []

    def test_returned_graph_is_a_copy(self, cache):
        cache.get_guild("g1")["suggestions"].append({"id": 1})
        assert cache.get_guild("g1")["suggestions"] == []


class TestSequencing:
    def test_duplicate_is_dropped(self, cache):
        event = _event("suggestion-create", {"id": 1, "status": "open"}, sequence=2)
        assert cache.apply(event) is True
        assert cache.apply(event) is False

    def test_late_event_is_dropped(self, cache):
        cache.apply(_event("suggestion-create", {"id": 1, "status": "open"}, sequence=2))
        stale = _event("suggestion-delete", {"guild_id": "g1", "suggestion_id": 1}, sequence=2)
        assert cache.apply(stale) is False
        assert len(cache.get_guild("g1")["suggestions"]) == 1

    def test_gap_triggers_full_reload(self, cache):
        with patch.object(cache, "load_all") as mock_load:
            applied = cache.apply(_event("suggestion-create", {"id": 1}, sequence=5))
        assert applied is False
        mock_load.assert_called_once()

    def test_origins_are_sequenced_independently(self, cache):
        with patch.object(cache, "load_all") as mock_load:
            assert cache.apply(_event("suggestion-create", {"id": 1}, sequence=1, origin="api-2"))
        mock_load.assert_not_called()

    def test_resync_hint_reloads_guild(self, cache):
        with patch.object(cache, "reload_guild") as mock_reload:
            cache.apply(_event("guild-update", {"resync": True}, sequence=2))
        mock_reload.assert_called_once_with("g1")

    def test_event_for_unknown_guild_reloads_it(self, cache):
        with patch.object(cache, "reload_guild") as mock_reload:
            cache.apply(_event("suggestion-create", {"id": 1}, sequence=2, guild_id="g9"))
        mock_reload.assert_called_once_with("g9")


class TestUpdatesKeepChildren:
    """Updates merge the row's own fields; children committed meanwhile survive."""

    def test_guild_update_after_child_create(self, cache):
        stale_graph = _empty_graph()
        cache.apply(_event("suggestion-create", {"id": 1, "status": "open"}, sequence=2))
        cache.apply(_event("guild-update", {**stale_graph, "name": "Renamed"}, sequence=3))

        guild = cache.get_guild("g1")
        assert guild["name"] == "Renamed"
        assert [s["id"] for s in guild["suggestions"]] == [1]
        assert guild["settings"]["prefix"] == "!"

    def test_user_update_keeps_moderation(self, cache):
        cache.apply(_event("user-create", {"id": "u1", "level": 0, "warnings": [], "kicks": []}, sequence=2))
        cache.apply(_event(
            "warning-create",
            {"id": 5, "user_id": "u1", "issuer_id": "mod", "reason": "spam"},
            sequence=3,
        ))
        cache.apply(_event(
            "user-update", {"id": "u1", "level": 2, "warnings": [], "kicks": []}, sequence=4,
        ))

        user = cache.get_guild("g1")["users"][0]
        assert user["level"] == 2
        assert [w["id"] for w in user["warnings"]] == [5]

    def test_user_update_for_unknown_user_reloads_guild(self, cache):
        with patch.object(cache, "reload_guild") as mock_reload:
            cache.apply(_event("user-update", {"id": "ghost", "level": 1}, sequence=2))
        mock_reload.assert_called_once_with("g1")


class TestReloadLocking:
    def _lock_free_from_other_thread(self, cache) -> bool:
        result = []

        def _try():
            if cache._lock.acquire(timeout=1):
                cache._lock.release()
                result.append(True)
            else:
                result.append(False)

        thread = threading.Thread(target=_try)
        thread.start()
        thread.join()
        return result[0]

    def test_gap_reload_reads_store_without_lock(self, cache):
        observed = []

        def find_graphs(engine):
            observed.append(self._lock_free_from_other_thread(cache))
            return []

        with patch.object(guild_service, "find_graphs", side_effect=find_graphs):
            cache.apply(_event("suggestion-create", {"id": 1}, sequence=9))
        assert observed == [True]
        assert cache.guild_ids() == []

    def test_unknown_guild_reload_reads_store_without_lock(self, cache):
        observed = []

        def find_by_id(engine, guild_id):
            observed.append(self._lock_free_from_other_thread(cache))
            return None

        with patch.object(guild_service, "find_by_id", side_effect=find_by_id):
            cache.apply(_event("suggestion-create", {"id": 1}, sequence=2, guild_id="g9"))
        assert observed == [True]


class TestOriginTracking:
    def test_tracked_origins_are_capped(self, cache):
        for n in range(MAX_TRACKED_ORIGINS + 5):
            cache.apply(_event("suggestion-create", {"id": n}, sequence=1, origin=f"other-{n}"))
        assert len(cache._last_sequence) == MAX_TRACKED_ORIGINS
        assert "api-1" not in cache._last_sequence
        assert f"other-{MAX_TRACKED_ORIGINS + 4}" in cache._last_sequence

    def test_active_origin_is_kept(self, cache):
        for n in range(MAX_TRACKED_ORIGINS + 5):
            cache.apply(_event("suggestion-create", {"id": n}, sequence=n + 1, origin="busy"))
            cache.apply(_event("suggestion-create", {"id": n}, sequence=1, origin=f"once-{n}"))
        assert "busy" in cache._last_sequence


class TestNotifyHandling:
    def test_invalid_payload_ignored(self, cache):
        with patch.object(cache, "apply") as mock_apply:
            cache.handle_notify("not json")
            cache.handle_notify('{"type": "guild-explode"}')
        mock_apply.assert_not_called()

    def test_valid_payload_applied(self, cache):
        event = _event("settings-update", {"guild_id": "g1", "prefix": "%"}, sequence=2)
        cache.handle_notify(event.to_json())
        assert cache.get_prefix("g1", default="!") == "%"

    def test_rejects_bad_channel(self):
        with pytest.raises(ValueError):
            GuildCache(MagicMock(), channel="events; DROP TABLE guilds")

    def test_callback_runs_on_registered_loop(self, cache):
        loop = asyncio.new_event_loop()
        try:
            callback = AsyncMock()
            cache.register_event_callback(EventType.GUILD_DELETE, callback, loop)
            event = _event("guild-delete", {"guild_id": "g1"}, sequence=2)
            cache.handle_notify(event.to_json())
            loop.run_until_complete(asyncio.sleep(0.01))
            callback.assert_awaited_once()
            assert callback.await_args.args[0].type == EventType.GUILD_DELETE
        finally:
            loop.close()

    def test_callback_without_loop_is_skipped(self, cache):
        callback = AsyncMock()
        cache.register_event_callback(EventType.GUILD_DELETE, callback)
        cache.handle_notify(_event("guild-delete", {"guild_id": "g1"}, sequence=2).to_json())
        callback.assert_not_called()
        assert cache.get_guild("g1") is None


class TestListenerHealth:
    def test_initial_state(self):
        c = GuildCache(MagicMock())
        assert c.listener_healthy is False
        assert c.listener_failed is False

    def test_failed_listener_is_unhealthy(self):
        c = GuildCache(MagicMock())
        c._listener_healthy = True
        c._listener_failed = True
        assert c.listener_healthy is False

    def test_stop_without_thread(self):
        GuildCache(MagicMock()).stop_listener()


class TestStoreMirror:
    """After a run of API calls the cache matches a fresh read of the store."""

    @pytest.fixture
    def live_cache(self, db_engine, notifier, guild):
        c = GuildCache(db_engine)
        c.load_all()
        notifier.subscribe(c.apply)
        return c

    def _assert_mirrors_store(self, cache, db_engine, guild_id="g1"):
        stored = guild_service.find_by_id(db_engine, guild_id)
        assert _shape(cache.get_guild(guild_id)) == _shape(guild_graph(stored))

    def test_load_all_reads_every_guild(self, db_engine, live_cache):
        guild_service.create(db_engine, {"id": "g2"})
        live_cache.load_all()
        assert live_cache.guild_ids() == ["g1", "g2"]

    def test_mutations_mirror_store(self, client, db_engine, live_cache):
        client.put("/api/guilds/g1", json={"name": "Renamed"})
        client.put("/api/guilds/g1/settings", json={"prefix": "?"})
        for uid in ("mod", "u1"):
            client.post("/api/guilds/g1/users", json={"id": uid})
        client.put("/api/guilds/g1/users/u1", json={"level": 3})
        warning = client.post(
            "/api/guilds/g1/users/u1/warnings", json={"issuer_id": "mod", "reason": "spam"},
        ).json()
        client.post("/api/guilds/g1/users/mod/kicks", json={"issuer_id": "u1", "reason": "test"})
        suggestion = client.post("/api/guilds/g1/suggestions", json={"content": "dark mode"}).json()
        client.put(
            f"/api/guilds/g1/suggestions/{suggestion['id']}",
            json={"content": "dark mode", "status": "resolved"},
        )
        ticket = client.post("/api/guilds/g1/support-tickets", json={"content": "help"}).json()
        client.delete(f"/api/guilds/g1/support-tickets/{ticket['id']}")
        client.post("/api/guilds/g1/self-assignable-roles", json={"role_id": "r1"})
        client.post("/api/guilds/g1/self-assignable-roles", json={"role_id": "r2"})
        client.delete("/api/guilds/g1/self-assignable-roles/r1")
        for requester in ("u1", "mod", "u1"):
            client.post("/api/guilds/g1/playlist", json={"requested_by": requester, "title": "song"})
        client.delete("/api/guilds/g1/playlist/user/u1")
        client.post("/api/guilds/g1/referrals", json={
            "id": 4242, "user_id": "u1", "invite_url": "https://discord.gg/x",
        })
        client.post("/api/guilds/g1/referrals/4242/joins")
        client.delete(f"/api/guilds/g1/users/u1/warnings/{warning['id']}")

        self._assert_mirrors_store(live_cache, db_engine)
        assert live_cache.get_prefix("g1", default="!") == "?"

    def test_user_delete_mirrors_cascade(self, client, db_engine, live_cache):
        for uid in ("mod", "u1"):
            client.post("/api/guilds/g1/users", json={"id": uid})
        client.post("/api/guilds/g1/users/u1/warnings", json={"issuer_id": "mod", "reason": "spam"})
        client.delete("/api/guilds/g1/users/mod")
        self._assert_mirrors_store(live_cache, db_engine)

    def test_rejected_request_leaves_cache_unchanged(self, client, db_engine, live_cache):
        before = live_cache.get_guild("g1")
        response = client.post("/api/guilds/g1/users/ghost/warnings", json={
            "issuer_id": "mod", "reason": "spam",
        })
        assert response.status_code == 404
        assert live_cache.get_guild("g1") == before
