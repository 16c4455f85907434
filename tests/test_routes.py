"""API tests through the ASGI app with a scripted generator."""

import httpx
import pytest

from story_engine.app import create_app


@pytest.fixture
def app(tmp_path, scripted):
    return create_app(tmp_path / "data", generator=scripted("A quiet harbor town."))


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test/api") as c:
        yield c


# ── helpers ──────────────────────────────────────────────


def _runtime(app):
    return app.state.runtime


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

class TestSettings:
    async def test_health(self, client) -> None:
        resp = await client.get("/health")
        assert resp.json() == {"status": "ok"}

    async def test_patch_applies_live(self, app, client) -> None:
        generator = _runtime(app).queue.generator
        resp = await client.patch("/settings", json={"crucible": {"max_beats": 4}})
        assert resp.json()["crucible"]["max_beats"] == 4
        assert _runtime(app).crucible.settings.max_beats == 4
        assert _runtime(app).queue.generator is generator

        resp = await client.get("/settings")
        assert resp.json()["crucible"]["max_beats"] == 4

    async def test_invalid_patch_rejected_and_not_stored(self, app, client) -> None:
        resp = await client.patch("/settings", json={"crucible": {"director_cadence": "often"}})
        assert resp.status_code == 400
        assert (await client.get("/settings")).json()["crucible"]["director_cadence"] == 3
        assert _runtime(app).crucible.settings.director_cadence == 3
        restarted = create_app(_runtime(app).storage.base_path)
        assert restarted.state.runtime.crucible.settings.director_cadence == 3


# ---------------------------------------------------------------------------
# Story fields, lists, brainstorm
# ---------------------------------------------------------------------------

class TestStory:
    async def test_fields(self, client) -> None:
        await client.put("/fields/canon", json={"content": "Rain never stops."})
        resp = await client.get("/fields")
        assert resp.json() == {"canon": "Rain never stops."}

    async def test_unknown_field_rejected(self, client) -> None:
        resp = await client.put("/fields/nope", json={"content": "x"})
        assert resp.status_code == 422

    async def test_generate_field(self, app, client) -> None:
        resp = await client.post("/fields/generate", json={"field_id": "story_prompt"})
        assert resp.json()["request"]["target"] == {"kind": "field", "field_id": "story_prompt"}
        await _runtime(app).queue.wait_idle()
        assert _runtime(app).storage.get_field("story_prompt") == "A quiet harbor town."

    async def test_remove_missing_list_item(self, client) -> None:
        resp = await client.delete("/lists/locations/missing")
        assert resp.status_code == 404

    async def test_brainstorm(self, app, client) -> None:
        resp = await client.post("/brainstorm", json={"message": "  "})
        assert resp.status_code == 400

        await client.post("/brainstorm", json={"message": "What about smugglers?"})
        await _runtime(app).queue.wait_idle()
        messages = (await client.get("/brainstorm")).json()
        assert [(m["role"], m["content"]) for m in messages] == [
            ("user", "What about smugglers?"),
            ("assistant", "A quiet harbor town."),
        ]

        await client.delete("/brainstorm")
        assert (await client.get("/brainstorm")).json() == []


# ---------------------------------------------------------------------------
# Generation queue
# ---------------------------------------------------------------------------

class TestGeneration:
    async def test_idle_snapshot(self, client) -> None:
        resp = await client.get("/generation")
        assert resp.json() == {"active": None, "queued": [], "notifications": []}

    async def test_continue_without_waiting_request(self, client) -> None:
        resp = await client.post("/generation/continue")
        assert resp.status_code == 400

    async def test_cancel_unknown(self, client) -> None:
        resp = await client.post("/generation/nope/cancel")
        assert resp.status_code == 404


# ---------------------------------------------------------------------------
# Crucible
# ---------------------------------------------------------------------------

class TestCrucible:
    async def test_goal_to_chaining(self, client) -> None:
        goal = (await client.post("/crucible/goals", json={"text": "Stop the coup"})).json()
        assert goal["selected"]

        resp = await client.put("/crucible/goals/missing", json={"text": "x"})
        assert resp.status_code == 404

        state = (await client.post("/crucible/confirm", json={"mode": "chaining"})).json()
        assert state["phase"] == "chaining"
        assert state["active_goal_id"] == goal["id"]

        resp = await client.post(f"/crucible/goals/{goal['id']}/toggle")
        assert resp.status_code == 400

    async def test_confirm_without_goals(self, client) -> None:
        resp = await client.post("/crucible/confirm", json={})
        assert resp.status_code == 400

    async def test_constraint_actions(self, client) -> None:
        goal = (await client.post("/crucible/goals", json={"text": "Stop the coup"})).json()
        await client.post("/crucible/confirm", json={})
        chain_url = f"/crucible/chains/{goal['id']}"

        constraint = (await client.post(f"{chain_url}/constraints", json={"description": "who lit the fire"})).json()
        assert constraint["short_id"] == "R1"

        resp = await client.post(f"{chain_url}/complete")
        assert resp.status_code == 400

        for _ in range(2):
            resp = await client.post(f"{chain_url}/reject")
            assert resp.status_code == 200
            assert resp.json()["beats"] == []

        chain = (await client.post(f"{chain_url}/constraints/R1", json={"action": "ground"})).json()
        assert chain["open_constraints"] == []
        assert chain["resolved_constraints"][0]["status"] == "groundState"

    async def test_beat_through_queue(self, tmp_path, scripted) -> None:
        app = create_app(tmp_path / "beats", generator=scripted("The gate opens at dawn\n[OPENER]"))
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test/api") as client:
            goal = (await client.post("/crucible/goals", json={"text": "Stop the coup"})).json()
            await client.post("/crucible/confirm", json={})
            queued = (await client.post(f"/crucible/chains/{goal['id']}/beat")).json()
            assert queued["request"]["target"]["kind"] == "crucible-chain"

            await _runtime(app).queue.wait_idle()
            state = (await client.get("/crucible")).json()
            assert state["phase"] == "review"
            assert state["chains"][goal["id"]]["beats"][0]["scene"] == "The gate opens at dawn"

            merged = (await client.post("/crucible/merge")).json()
            assert merged == {}
            assert (await client.get("/crucible")).json()["phase"] == "merged"

    async def test_reset(self, client) -> None:
        await client.post("/crucible/goals", json={"text": "Stop the coup"})
        state = (await client.post("/crucible/reset")).json()
        assert state["phase"] == "idle"
        assert state["goals"] == []
