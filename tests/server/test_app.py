"""Tests for the EcoPulse REST API, end to end over the in-memory engine."""

from __future__ import annotations

from datetime import timedelta

import pytest

NOW_ISO = "2026-06-15T12:00:00+00:00"


def submit(client, headers, payload, user="alice"):
    return client.post("/api/v1/observations", json=payload, headers=headers(user))


# ============================================================================
# Health and middleware
# ============================================================================


class TestHealth:
    def test_healthy_without_database_probe(self, client):
        resp = client.get("/api/v1/health")

        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["server"] == "ecopulse"
        assert "database" not in data

    def test_correlation_id_echoed(self, client):
        resp = client.get("/api/v1/health", headers={"X-Correlation-Id": "trace-42"})
        assert resp.headers["X-Correlation-Id"] == "trace-42"

    def test_correlation_id_generated(self, client):
        resp = client.get("/api/v1/health")
        assert len(resp.headers["X-Correlation-Id"]) == 16


# ============================================================================
# Observation intake
# ============================================================================


class TestSubmitObservation:
    """Test POST /api/v1/observations."""

    def test_accepted(self, client, headers, submission):
        resp = submit(client, headers, submission())

        assert resp.status_code == 201
        data = resp.json()
        assert data["accepted"] is True
        assert data["status"] == "accepted"
        assert data["replayed"] is False

    def test_missing_identity(self, client, submission):
        resp = client.post("/api/v1/observations", json=submission())

        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "AUTH_MISSING_IDENTITY"

    def test_invalid_json(self, client, headers):
        resp = client.post(
            "/api/v1/observations",
            content=b"{not json",
            headers={**headers("alice"), "Content-Type": "application/json"},
        )

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "VALIDATION_INVALID_JSON"

    def test_future_timestamp_names_field(self, client, headers, submission):
        resp = submit(client, headers, submission(observed_at="2026-06-15T13:00:00+00:00"))

        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error["code"] == "VALIDATION_INVALID_VALUE"
        assert error["field"] == "observed_at"

    def test_idempotent_replay(self, client, headers, submission):
        first = submit(client, headers, submission(idempotency_key="device-1:17"))
        second = submit(client, headers, submission(idempotency_key="device-1:17"))

        assert first.status_code == 201
        assert second.status_code == 200
        assert second.json()["replayed"] is True
        assert second.json()["observation_id"] == first.json()["observation_id"]

    def test_bad_expertise_header(self, client, submission):
        resp = client.post(
            "/api/v1/observations", json=submission(), headers={"X-User-Id": "alice", "X-Expertise-Level": "guru"}
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["field"] == "X-Expertise-Level"


class TestValidateTimestamp:
    def test_reports_window(self, client, submission):
        resp = client.post("/api/v1/observations/validate-timestamp", json={"observed_at": NOW_ISO})

        assert resp.status_code == 200
        data = resp.json()
        assert data["window"] == {"min_date": "2026-03-17", "max_date": "2026-06-15"}

    def test_missing_timestamp(self, client):
        resp = client.post("/api/v1/observations/validate-timestamp", json={})
        assert resp.status_code == 400
        assert resp.json()["error"]["field"] == "observed_at"


# ============================================================================
# Reading observations
# ============================================================================


class TestGetObservation:
    """Only the owner sees the raw coordinate."""

    @pytest.fixture
    def protected_id(self, client, headers, submission):
        resp = submit(client, headers, submission(latitude=47.0, longitude=8.0))
        return resp.json()["observation_id"]

    def test_public_view_is_blurred(self, client, headers, protected_id):
        data = client.get(f"/api/v1/observations/{protected_id}", headers=headers("bob")).json()

        assert "raw_coordinate" not in data
        assert data["is_private"] is True
        assert data["coordinate"] != {"latitude": 47.0, "longitude": 8.0}
        assert data["precision_m"] >= 1000.0

    def test_anonymous_view(self, client, protected_id):
        data = client.get(f"/api/v1/observations/{protected_id}").json()
        assert "raw_coordinate" not in data

    def test_owner_view(self, client, headers, protected_id):
        data = client.get(f"/api/v1/observations/{protected_id}", headers=headers("alice")).json()

        assert data["raw_coordinate"] == {"latitude": 47.0, "longitude": 8.0}
        assert data["zone_status"] == "core"
        assert data["expired"] is False

    def test_not_found(self, client):
        resp = client.get("/api/v1/observations/missing")

        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "NOT_FOUND_RESOURCE"


class TestDisclosure:
    """Buffer-zone observations wait for the owner to choose a precision."""

    @pytest.fixture
    def buffered_id(self, client, headers, submission):
        resp = submit(client, headers, submission(latitude=47.0225, longitude=8.0))
        assert resp.json()["requires_disclosure_confirmation"] is True
        return resp.json()["observation_id"]

    def test_confirm(self, client, headers, buffered_id):
        resp = client.post(
            f"/api/v1/observations/{buffered_id}/disclosure", json={"precision_m": 500}, headers=headers("alice")
        )

        assert resp.status_code == 200
        data = resp.json()
        assert data["requires_disclosure_confirmation"] is False
        assert data["precision_m"] == 500.0
        assert data["coordinate"] is not None

    def test_other_user(self, client, headers, buffered_id):
        resp = client.post(f"/api/v1/observations/{buffered_id}/disclosure", json={}, headers=headers("bob"))

        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "FORBIDDEN_NOT_OWNER"

    def test_precision_out_of_range(self, client, headers, buffered_id):
        resp = client.post(
            f"/api/v1/observations/{buffered_id}/disclosure", json={"precision_m": 50}, headers=headers("alice")
        )
        assert resp.status_code == 400


# ============================================================================
# Offline sync, CSV import and conflicts
# ============================================================================


class TestSyncAndBatch:
    def test_sync_reports_each_item(self, client, headers, submission):
        items = [submission(idempotency_key="q-1"), submission(latitude=123.0), submission(idempotency_key="q-1")]

        resp = client.post("/api/v1/observations/sync", json={"items": items}, headers=headers("alice"))

        assert resp.status_code == 200
        data = resp.json()
        assert [r["status"] for r in data["results"]] == ["accepted", "rejected", "accepted"]
        assert data["results"][1]["error"]["details"]["field"] == "latitude"
        assert data["results"][2]["replayed"] is True
        assert data["accepted"] == 2
        assert data["rejected"] == 1

    def test_sync_requires_items(self, client, headers):
        resp = client.post("/api/v1/observations/sync", json={}, headers=headers("alice"))
        assert resp.status_code == 400
        assert resp.json()["error"]["field"] == "items"

    def test_batch_dry_run(self, client, headers):
        rows = [
            {"species": "lynx-lynx", "observation_timestamp": NOW_ISO, "latitude": 46.1, "longitude": 9.1},
            {"species": "lynx-lynx", "observation_timestamp": NOW_ISO, "latitude": 95.0, "longitude": 45.0},
        ]

        resp = client.post(
            "/api/v1/observations/batch", json={"items": rows, "dry_run": True}, headers=headers("erin", level="expert")
        )

        assert resp.status_code == 200
        data = resp.json()
        assert data["valid_rows"] == [0]
        assert data["validation_errors"][0]["row_index"] == 1

    def test_batch_experts_only(self, client, headers):
        resp = client.post("/api/v1/observations/batch", json={"items": []}, headers=headers("alice"))

        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "FORBIDDEN_NOT_ELIGIBLE"

    def test_resolve_conflict(self, client, headers, submission):
        submit(client, headers, submission())
        second = submit(client, headers, submission(latitude=46.0003, species_id="aquila-heliaca")).json()
        assert second["status"] == "conflict"

        resp = client.post(
            f"/api/v1/observations/{second['observation_id']}/conflict",
            json={"choice": "keep_new"},
            headers=headers("alice"),
        )

        assert resp.status_code == 200
        assert resp.json()["kept"] == [second["observation_id"]]


# ============================================================================
# Verification, disputes and votes
# ============================================================================


class TestVerificationFlow:
    """Test the verification and dispute endpoints together."""

    @pytest.fixture
    def observation_id(self, client, headers, submission):
        return submit(client, headers, submission()).json()["observation_id"]

    def verify(self, client, headers, observation_id, user="vera", score=80, tier=1):
        return client.post(
            f"/api/v1/observations/{observation_id}/verifications",
            json={"tier": tier, "confidence": 0.9},
            headers=headers(user, score),
        )

    def test_verify(self, client, headers, observation_id):
        resp = self.verify(client, headers, observation_id)

        assert resp.status_code == 201
        assert resp.json()["verifier_id"] == "vera"
        view = client.get(f"/api/v1/observations/{observation_id}").json()
        assert view["state"] == "verified"
        assert len(view["verifications"]) == 1

    def test_low_credibility(self, client, headers, observation_id):
        resp = self.verify(client, headers, observation_id, user="newbie", score=None)

        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "FORBIDDEN_INSUFFICIENT_CREDIBILITY"

    def test_bad_confidence(self, client, headers, observation_id):
        resp = client.post(
            f"/api/v1/observations/{observation_id}/verifications",
            json={"tier": 1, "confidence": 1.5},
            headers=headers("vera", 80),
        )
        assert resp.status_code == 400

    def test_dispute_and_vote(self, client, headers, observation_id):
        self.verify(client, headers, observation_id)

        dispute = client.post(
            f"/api/v1/observations/{observation_id}/disputes",
            json={"reason": "Juvenile golden eagle, not adult"},
            headers=headers("dora", 80),
        )
        assert dispute.status_code == 201
        dispute_id = dispute.json()["id"]
        assert dispute.json()["status"] == "voting"

        for voter in ("v1", "v2", "v3"):
            vote = client.post(
                f"/api/v1/disputes/{dispute_id}/votes", json={"choice": "overturn"}, headers=headers(voter, 80)
            )
            assert vote.status_code == 201

        assert vote.json()["resolved"] is True
        data = client.get(f"/api/v1/disputes/{dispute_id}").json()
        assert data["outcome"] == "overturned"
        assert data["tally"]["overturn"] == 3
        assert client.get(f"/api/v1/observations/{observation_id}").json()["state"] == "resolved_overturned"

    def test_duplicate_vote(self, client, headers, observation_id):
        self.verify(client, headers, observation_id)
        dispute_id = client.post(
            f"/api/v1/observations/{observation_id}/disputes", json={"reason": "Wrong"}, headers=headers("dora", 80)
        ).json()["id"]

        client.post(f"/api/v1/disputes/{dispute_id}/votes", json={"choice": "uphold"}, headers=headers("v1", 80))
        resp = client.post(
            f"/api/v1/disputes/{dispute_id}/votes", json={"choice": "uphold"}, headers=headers("v1", 80)
        )

        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "CONFLICT_ALREADY_VOTED"

    def test_invalid_vote_choice(self, client, headers):
        resp = client.post("/api/v1/disputes/any/votes", json={"choice": "abstain"}, headers=headers("v1", 80))

        assert resp.status_code == 400
        assert resp.json()["error"]["field"] == "choice"

    def test_refresh_expired(self, client, headers, observation_id, clock):
        clock.advance(days=120)

        resp = client.post(
            f"/api/v1/observations/{observation_id}/refresh",
            json={"evidence_refs": ["photo-9"]},
            headers=headers("alice"),
        )

        assert resp.status_code == 200
        assert resp.json()["expired"] is False
        assert resp.json()["evidence_refs"] == ["photo-9"]

    def test_refresh_requires_evidence(self, client, headers, observation_id):
        resp = client.post(
            f"/api/v1/observations/{observation_id}/refresh", json={"evidence_refs": []}, headers=headers("alice")
        )
        assert resp.status_code == 400


class TestCredibility:
    def test_report(self, client, headers, submission):
        submit(client, headers, submission())

        data = client.get("/api/v1/users/alice/credibility").json()

        assert data["current_score"] == 10
        assert data["category"] == "beginner"
        assert len(data["components"]) == 4

    def test_unknown_user_is_new(self, client):
        data = client.get("/api/v1/users/nobody/credibility").json()
        assert data["is_new_user"] is True
        assert data["history"] == []


def test_window_matches_clock(client, clock):
    clock.advance(days=1)
    data = client.post(
        "/api/v1/observations/validate-timestamp", json={"observed_at": (clock.now - timedelta(hours=1)).isoformat()}
    ).json()
    assert data["window"]["max_date"] == "2026-06-16"
