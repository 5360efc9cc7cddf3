"""Concurrent access to the engine over the in-memory store.

Threads start together behind a barrier so their transactions contend for
the same user ledger or observation row.
"""

from __future__ import annotations

import logging
import threading

import pytest

from ecopulse.core.credibility import CredibilityReason
from ecopulse.core.models import ObservationState

THREADS = 8


def run_together(target, args_list):
    """Run ``target`` once per argument tuple, all released at the same moment."""
    barrier = threading.Barrier(len(args_list))
    errors = []
    results = []

    def worker(*args):
        barrier.wait()
        try:
            results.append(target(*args))
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker, args=args) for args in args_list]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results, errors


def transitions(caplog, observation_id):
    return [
        r.extra_data
        for r in caplog.records
        if getattr(r, "extra_data", {}).get("event") == "observation_transition"
        and r.extra_data["observation_id"] == observation_id
    ]


class TestLedgerContention:
    """Outcomes for one user arriving at once."""

    def test_no_lost_updates(self, engine):
        engine.ledger.enroll("alice")
        start = engine.ledger.score("alice")

        results, errors = run_together(
            engine.ledger.record_outcome,
            [("alice", CredibilityReason.VERIFIER_PARTICIPATION, 1)] * THREADS,
        )

        assert errors == []
        assert sorted(results) == list(range(start + 1, start + THREADS + 1))
        assert engine.ledger.score("alice") == start + THREADS
        assert engine.ledger.replay("alice") == start + THREADS
        assert len(engine.ledger.history("alice")) == THREADS + 1

    def test_concurrent_first_contact_enrolls_once(self, engine):
        _, errors = run_together(engine.ledger.enroll, [("bob",)] * THREADS)

        assert errors == []
        history = engine.ledger.history("bob")
        assert [e.reason for e in history] == [CredibilityReason.ENROLLMENT]


class TestVerificationContention:
    """Verifiers racing on one pending observation."""

    @pytest.fixture
    def observation_id(self, engine, make_actor, submission):
        return engine.validate_and_ingest(submission(), make_actor("owner")).observation_id

    def test_single_pending_to_verified_transition(self, engine, make_actor, observation_id, caplog):
        verifiers = [make_actor(f"verifier-{i}", 80) for i in range(2)]

        with caplog.at_level(logging.INFO, logger="ecopulse.core.verification.service"):
            records, errors = run_together(
                engine.submit_verification,
                [(observation_id, v, 1, 0.9) for v in verifiers],
            )

        assert errors == []
        assert len(records) == 2
        assert engine.get_observation(observation_id).state == ObservationState.VERIFIED

        moves = transitions(caplog, observation_id)
        assert [(m["from_state"], m["to_state"]) for m in moves] == [("pending", "verified")]

        owner_reasons = [e.reason for e in engine.ledger.history("owner")]
        assert owner_reasons.count(CredibilityReason.OBSERVATION_VERIFIED) == 1
        assert engine.credibility("owner").score == 12

    def test_each_verifier_credited_once(self, engine, make_actor, observation_id):
        verifier = make_actor("verifier", 80)

        _, errors = run_together(
            engine.submit_verification,
            [(observation_id, verifier, 1, 0.5 + i / 100) for i in range(4)],
        )

        assert errors == []
        assert engine.credibility("verifier").score == 81
        assert len(engine.verification.active_verifications(observation_id)) == 1
