from __future__ import annotations

from typing import Any

from mediascribe.db.database import Database
from mediascribe.types import Job


class TranscriptsRepository:
    """Stores finished transcripts for an authenticated owner."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def save(self, job: Job) -> None:
        if not job.owner:
            raise ValueError("Only jobs with an owner can be saved")

        with self.db.lock:
            self.db.conn.execute(
                """
                INSERT INTO transcripts(
                    job_id, owner, original_name, model, diarize, summarize,
                    transcript, formatted_transcript, summary, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, datetime('now'))
                ON CONFLICT(job_id) DO UPDATE SET
                    transcript = excluded.transcript,
                    formatted_transcript = excluded.formatted_transcript,
                    summary = excluded.summary
                """,
                (
                    job.id,
                    job.owner,
                    job.original_name or None,
                    job.options.model,
                    int(job.options.diarize),
                    int(job.options.summarize),
                    job.transcript,
                    job.formatted_transcript,
                    job.summary,
                ),
            )
            self.db.conn.commit()

    def get(self, job_id: str) -> dict[str, Any] | None:
        row = self.db.conn.execute(
            "SELECT * FROM transcripts WHERE job_id = ? LIMIT 1",
            (job_id,),
        ).fetchone()
        return dict(row) if row is not None else None

    def list_for_owner(self, owner: str, limit: int = 20) -> list[dict[str, Any]]:
        rows = self.db.conn.execute(
            """
            SELECT * FROM transcripts
            WHERE owner = ?
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (owner, max(1, min(limit, 100))),
        ).fetchall()
        return [dict(row) for row in rows]
