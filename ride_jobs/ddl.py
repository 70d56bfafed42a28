"""Database schema DDL for ride jobs."""

JOBS_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS ride_jobs (
  id               TEXT PRIMARY KEY,
  queue_name       TEXT NOT NULL,
  kind             TEXT NOT NULL,

  status           TEXT NOT NULL CHECK (status IN ('waiting', 'active', 'delayed', 'completed', 'failed')),
  payload          JSONB NOT NULL,

  attempts         INT NOT NULL DEFAULT 0 CHECK (attempts >= 0),
  max_attempts     INT NOT NULL CHECK (max_attempts > 0),
  next_run_at      TIMESTAMPTZ NOT NULL,

  last_error       JSONB,
  result           JSONB,

  worker_id        TEXT,
  lease_expires_at TIMESTAMPTZ,

  created_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
  updated_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
  started_at       TIMESTAMPTZ,
  finished_at      TIMESTAMPTZ
);

-- Claim path: ready jobs of a queue in run order
CREATE INDEX IF NOT EXISTS idx_ride_jobs_ready
ON ride_jobs (queue_name, next_run_at, created_at)
WHERE status IN ('waiting', 'delayed');

CREATE INDEX IF NOT EXISTS idx_ride_jobs_queue_status
ON ride_jobs (queue_name, status);

-- Retention purge and failed-job listing
CREATE INDEX IF NOT EXISTS idx_ride_jobs_finished
ON ride_jobs (queue_name, status, finished_at)
WHERE status IN ('completed', 'failed');

-- Stalled-job reaper
CREATE INDEX IF NOT EXISTS idx_ride_jobs_expired_leases
ON ride_jobs (lease_expires_at)
WHERE status = 'active' AND lease_expires_at IS NOT NULL;

CREATE TABLE IF NOT EXISTS ride_job_queues (
  name        TEXT PRIMARY KEY,
  paused      BOOLEAN NOT NULL DEFAULT FALSE,
  updated_at  TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""
