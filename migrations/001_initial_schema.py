"""Migration 001: Initial schema.

Creates the trust-engine tables: observations, verification records,
disputes, votes, the append-only credibility history, and the read-only
protected-zone registry. Invariants that can be expressed in SQL are
enforced with CHECK constraints and a trigger so a violating transaction
is rejected at commit rather than half-applied.
"""

version = "001"
description = "initial_schema"


def up(conn) -> None:
    """Create the EcoPulse schema."""
    cur = conn.cursor()
    try:
        # ------------------------------------------------------------------
        # Protected zones (maintained by platform operators)
        # ------------------------------------------------------------------
        cur.execute("""
            CREATE TABLE IF NOT EXISTS protected_zones (
                id TEXT PRIMARY KEY,
                category TEXT NOT NULL,
                buffer_distance_m DOUBLE PRECISION NOT NULL DEFAULT 0 CHECK (buffer_distance_m >= 0),
                blur_radius_m DOUBLE PRECISION CHECK (blur_radius_m IS NULL OR blur_radius_m > 0),
                center_lat DOUBLE PRECISION,
                center_lng DOUBLE PRECISION,
                radius_m DOUBLE PRECISION,
                polygon JSONB,
                CHECK (
                    (center_lat IS NOT NULL AND center_lng IS NOT NULL AND radius_m IS NOT NULL)
                    OR polygon IS NOT NULL
                )
            )
        """)

        # ------------------------------------------------------------------
        # Observations
        # ------------------------------------------------------------------
        cur.execute("""
            CREATE TABLE IF NOT EXISTS observations (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                species_id TEXT NOT NULL,
                raw_lat DOUBLE PRECISION NOT NULL CHECK (raw_lat BETWEEN -90 AND 90),
                raw_lng DOUBLE PRECISION NOT NULL CHECK (raw_lng BETWEEN -180 AND 180),
                disclosed_lat DOUBLE PRECISION,
                disclosed_lng DOUBLE PRECISION,
                disclosure_precision_m DOUBLE PRECISION,
                zone_status TEXT NOT NULL DEFAULT 'none'
                    CHECK (zone_status IN ('none', 'buffer', 'core')),
                zone_id TEXT,
                requires_disclosure_confirmation BOOLEAN NOT NULL DEFAULT FALSE,
                is_private BOOLEAN NOT NULL DEFAULT FALSE,
                is_retrospective BOOLEAN NOT NULL DEFAULT FALSE,
                justification TEXT,
                state TEXT NOT NULL DEFAULT 'pending'
                    CHECK (state IN ('pending', 'verified', 'disputed', 'under_review',
                                     'resolved_upheld', 'resolved_overturned')),
                media_refs JSONB NOT NULL DEFAULT '[]',
                evidence_refs JSONB NOT NULL DEFAULT '[]',
                notes TEXT NOT NULL DEFAULT '',
                count INTEGER NOT NULL DEFAULT 1 CHECK (count >= 1),
                idempotency_key TEXT,
                conflict_detected BOOLEAN NOT NULL DEFAULT FALSE,
                conflicting_ids JSONB NOT NULL DEFAULT '[]',
                superseded_by TEXT REFERENCES observations(id),
                observed_at TIMESTAMPTZ NOT NULL,
                submitted_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                refreshed_at TIMESTAMPTZ,
                version INTEGER NOT NULL DEFAULT 0,
                CHECK (
                    NOT is_retrospective
                    OR (justification IS NOT NULL AND char_length(justification) BETWEEN 1 AND 500)
                ),
                CHECK (zone_status <> 'core' OR is_private)
            )
        """)
        cur.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_observations_idempotency
            ON observations(owner_id, idempotency_key)
            WHERE idempotency_key IS NOT NULL
        """)
        cur.execute("""
            CREATE INDEX IF NOT EXISTS idx_observations_owner_observed
            ON observations(owner_id, observed_at)
            WHERE superseded_by IS NULL
        """)

        # ------------------------------------------------------------------
        # Verification records (immutable)
        # ------------------------------------------------------------------
        cur.execute("""
            CREATE TABLE IF NOT EXISTS verification_records (
                id TEXT PRIMARY KEY,
                observation_id TEXT NOT NULL REFERENCES observations(id),
                verifier_id TEXT NOT NULL,
                tier SMALLINT NOT NULL CHECK (tier IN (1, 2)),
                confidence DOUBLE PRECISION NOT NULL CHECK (confidence BETWEEN 0 AND 1),
                notes TEXT NOT NULL DEFAULT '',
                supersedes_id TEXT UNIQUE REFERENCES verification_records(id),
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
        """)
        cur.execute("""
            CREATE INDEX IF NOT EXISTS idx_verification_records_observation
            ON verification_records(observation_id)
        """)

        # ------------------------------------------------------------------
        # Disputes and votes
        # ------------------------------------------------------------------
        cur.execute("""
            CREATE TABLE IF NOT EXISTS disputes (
                id TEXT PRIMARY KEY,
                observation_id TEXT NOT NULL REFERENCES observations(id),
                raised_by TEXT NOT NULL,
                reason TEXT NOT NULL,
                verification_id TEXT REFERENCES verification_records(id),
                evidence_ref TEXT,
                status TEXT NOT NULL DEFAULT 'open' CHECK (status IN ('open', 'voting', 'resolved')),
                outcome TEXT CHECK (outcome IN ('upheld', 'overturned')),
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                voting_deadline TIMESTAMPTZ,
                resolved_at TIMESTAMPTZ,
                version INTEGER NOT NULL DEFAULT 0,
                CHECK ((status = 'resolved') = (outcome IS NOT NULL))
            )
        """)
        cur.execute("""
            CREATE INDEX IF NOT EXISTS idx_disputes_status ON disputes(status)
        """)
        cur.execute("""
            CREATE TABLE IF NOT EXISTS votes (
                id TEXT PRIMARY KEY,
                dispute_id TEXT NOT NULL REFERENCES disputes(id),
                voter_id TEXT NOT NULL,
                choice TEXT NOT NULL CHECK (choice IN ('uphold', 'overturn')),
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                UNIQUE (dispute_id, voter_id)
            )
        """)
        cur.execute("""
            CREATE OR REPLACE FUNCTION disputes_require_vote() RETURNS trigger AS $$
            BEGIN
                IF NEW.status = 'resolved'
                   AND NOT EXISTS (SELECT 1 FROM votes WHERE dispute_id = NEW.id) THEN
                    RAISE EXCEPTION 'dispute % cannot resolve without votes', NEW.id;
                END IF;
                RETURN NEW;
            END
            $$ LANGUAGE plpgsql
        """)
        cur.execute("DROP TRIGGER IF EXISTS trg_disputes_require_vote ON disputes")
        cur.execute("""
            CREATE TRIGGER trg_disputes_require_vote
            BEFORE UPDATE ON disputes
            FOR EACH ROW EXECUTE FUNCTION disputes_require_vote()
        """)

        # ------------------------------------------------------------------
        # Credibility history (append-only)
        # ------------------------------------------------------------------
        cur.execute("""
            CREATE TABLE IF NOT EXISTS credibility_history (
                seq BIGSERIAL PRIMARY KEY,
                id TEXT NOT NULL UNIQUE,
                user_id TEXT NOT NULL,
                reason TEXT NOT NULL,
                delta INTEGER NOT NULL,
                score INTEGER NOT NULL CHECK (score BETWEEN 0 AND 100),
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                observation_id TEXT REFERENCES observations(id),
                dispute_id TEXT REFERENCES disputes(id)
            )
        """)
        cur.execute("""
            CREATE INDEX IF NOT EXISTS idx_credibility_history_user
            ON credibility_history(user_id, seq)
        """)
        cur.execute("""
            CREATE OR REPLACE FUNCTION credibility_history_append_only() RETURNS trigger AS $$
            BEGIN
                RAISE EXCEPTION 'credibility_history is append-only';
            END
            $$ LANGUAGE plpgsql
        """)
        cur.execute("DROP TRIGGER IF EXISTS trg_credibility_history_append_only ON credibility_history")
        cur.execute("""
            CREATE TRIGGER trg_credibility_history_append_only
            BEFORE UPDATE OR DELETE ON credibility_history
            FOR EACH ROW EXECUTE FUNCTION credibility_history_append_only()
        """)
    finally:
        cur.close()


def down(conn) -> None:
    """Drop the EcoPulse schema."""
    cur = conn.cursor()
    try:
        for table in (
            "credibility_history",
            "votes",
            "disputes",
            "verification_records",
            "observations",
            "protected_zones",
        ):
            cur.execute(f"DROP TABLE IF EXISTS {table} CASCADE")
        cur.execute("DROP FUNCTION IF EXISTS disputes_require_vote()")
        cur.execute("DROP FUNCTION IF EXISTS credibility_history_append_only()")
    finally:
        cur.close()
