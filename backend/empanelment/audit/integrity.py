"""Hash chain verification for the audit trail.

Trust model: after checking a record, the verifier carries the record's
STORED record_hash forward as the expected previous_hash of the next record.
A single tampered record is therefore reported on its own instead of
cascading down the chain. The cost is that an attacker who re-derives every
hash after the tampered record is not detected here; periodic anchoring of
the chain head outside the database is the defence for that case.
"""

import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from empanelment.audit.hashing import GENESIS_HASH, compute_record_hash
from empanelment.core.config import settings
from empanelment.core.metrics import track_chain_verification
from empanelment.models.audit import AuditAction, AuditCategory, AuditLog, AuditSeverity

logger = logging.getLogger(__name__)


@dataclass
class InvalidRecord:
    """A record whose recomputed hash does not match the stored hash."""

    id: str
    sequence_number: int
    expected_hash: str
    actual_hash: str | None


@dataclass
class VerificationResult:
    """Outcome of one verification run.

    valid is True when no record failed hash recomputation. broken_links and
    sequence_gaps are reported alongside for the operator.
    """

    valid: bool
    invalid_records: list[InvalidRecord] = field(default_factory=list)
    checked_count: int = 0
    first_sequence: int | None = None
    last_sequence: int | None = None
    # Sequence numbers whose stored previous_hash did not match the predecessor
    broken_links: list[int] = field(default_factory=list)
    # Sequence numbers whose immediate predecessor is missing
    sequence_gaps: list[int] = field(default_factory=list)

    @classmethod
    def empty(cls) -> "VerificationResult":
        return cls(valid=True)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class VerificationStatus(str, Enum):
    """Lifecycle of verification runs in this process."""

    NOT_STARTED = "NOT_STARTED"
    RUNNING = "RUNNING"
    VALID = "VALID"
    INVALID = "INVALID"


@dataclass
class ChainStatus:
    """Current size of the chain plus the last verification outcome."""

    total_records: int
    latest_sequence: int | None
    last_verified_at: datetime | None
    last_verification_result: VerificationResult | None
    status: VerificationStatus


class VerificationState:
    """
    Process-scoped record of the most recent completed verification run.

    Starts empty, is overwritten only by a completed run and is read by the
    status query. It is not persisted: every process has its own copy and it
    resets on restart. A run that fails on infrastructure leaves it untouched.
    """

    def __init__(self):
        self.reset()

    def reset(self) -> None:
        self.last_verified_at: datetime | None = None
        self.last_result: VerificationResult | None = None
        self._running = 0

    @property
    def status(self) -> VerificationStatus:
        if self._running:
            return VerificationStatus.RUNNING
        if self.last_result is None:
            return VerificationStatus.NOT_STARTED
        return VerificationStatus.VALID if self.last_result.valid else VerificationStatus.INVALID

    def begin(self) -> None:
        self._running += 1

    def complete(self, result: VerificationResult) -> None:
        self._running = max(0, self._running - 1)
        self.last_verified_at = datetime.now(timezone.utc)
        self.last_result = result

    def abort(self) -> None:
        self._running = max(0, self._running - 1)


verification_state = VerificationState()


class AuditIntegrityService:
    """Verifies the audit hash chain over a sequence range."""

    def __init__(
        self,
        db: AsyncSession,
        state: VerificationState | None = None,
        batch_size: int | None = None,
    ):
        self.db = db
        self.state = state or verification_state
        self.batch_size = batch_size or settings.AUDIT_VERIFY_BATCH_SIZE

    async def verify_chain(
        self,
        start_sequence: int | None = None,
        end_sequence: int | None = None,
    ) -> VerificationResult:
        """
        Verify the hash chain between two sequence numbers (inclusive).

        Omitted bounds mean "from genesis" and "to the latest record". An open
        upper bound is pinned to the latest sequence number when the run
        starts; records appended afterwards are not part of this run.

        Mismatches are reported in the result, never raised. Storage errors
        propagate and no result is recorded.
        """
        logger.info(
            "Starting hash chain verification",
            extra={
                "event_type": "audit.chain.verification_started",
                "start_sequence": start_sequence,
                "end_sequence": end_sequence,
            },
        )

        self.state.begin()
        started = time.perf_counter()
        try:
            result = await self._verify_range(start_sequence, end_sequence)
        except Exception:
            self.state.abort()
            logger.error(
                "Hash chain verification aborted",
                exc_info=True,
                extra={"event_type": "audit.chain.verification_aborted"},
            )
            raise

        self._finish(result, time.perf_counter() - started)
        return result

    async def verify_recent(self, hours_back: int = 24) -> VerificationResult:
        """Verify records created in the last `hours_back` hours.

        Resolves the cutoff to the first record created at or after it and
        verifies from that sequence number to the latest record.
        """
        if hours_back <= 0:
            raise ValueError("hours_back must be positive")

        cutoff = datetime.now(timezone.utc) - timedelta(hours=hours_back)
        logger.info(
            f"Verifying records from the last {hours_back} hours",
            extra={"event_type": "audit.chain.verify_recent", "cutoff": cutoff.isoformat()},
        )

        first_recent = (
            await self.db.execute(
                select(AuditLog.sequence_number)
                .where(AuditLog.created_at >= cutoff)
                .order_by(AuditLog.sequence_number.asc())
                .limit(1)
            )
        ).scalar_one_or_none()

        if first_recent is None:
            self.state.begin()
            result = VerificationResult.empty()
            self._finish(result, 0.0)
            return result

        return await self.verify_chain(start_sequence=first_recent)

    async def get_chain_status(self) -> ChainStatus:
        """Get chain size, head sequence and the last verification outcome."""
        total_records = (await self.db.execute(select(func.count(AuditLog.id)))).scalar() or 0
        latest_sequence = (
            await self.db.execute(select(func.max(AuditLog.sequence_number)))
        ).scalar()

        return ChainStatus(
            total_records=total_records,
            latest_sequence=latest_sequence,
            last_verified_at=self.state.last_verified_at,
            last_verification_result=self.state.last_result,
            status=self.state.status,
        )

    # =========================================================================
    # Internals
    # =========================================================================

    async def _verify_range(
        self,
        start_sequence: int | None,
        end_sequence: int | None,
    ) -> VerificationResult:
        if end_sequence is None:
            end_sequence = (
                await self.db.execute(select(func.max(AuditLog.sequence_number)))
            ).scalar()
            if end_sequence is None:
                return VerificationResult.empty()

        expected_previous_hash = GENESIS_HASH
        previous_sequence: int | None = None

        # Seed from the nearest record before the range
        if start_sequence is not None and start_sequence > 1:
            seed = (
                await self.db.execute(
                    select(AuditLog.sequence_number, AuditLog.record_hash)
                    .where(AuditLog.sequence_number < start_sequence)
                    .order_by(AuditLog.sequence_number.desc())
                    .limit(1)
                )
            ).first()
            if seed is not None and seed.record_hash:
                expected_previous_hash = seed.record_hash
                previous_sequence = seed.sequence_number

        result = VerificationResult(valid=True)
        cursor = start_sequence - 1 if start_sequence is not None else None

        while True:
            query = (
                select(
                    AuditLog.id,
                    AuditLog.sequence_number,
                    AuditLog.action,
                    AuditLog.entity_type,
                    AuditLog.entity_id,
                    AuditLog.user_id,
                    AuditLog.old_values,
                    AuditLog.new_values,
                    AuditLog.previous_hash,
                    AuditLog.record_hash,
                    AuditLog.hashed_at,
                )
                .where(AuditLog.sequence_number <= end_sequence)
                .order_by(AuditLog.sequence_number.asc())
                .limit(self.batch_size)
            )
            if cursor is not None:
                query = query.where(AuditLog.sequence_number > cursor)

            rows = (await self.db.execute(query)).all()
            if not rows:
                break

            for row in rows:
                sequence = row.sequence_number
                if result.first_sequence is None:
                    result.first_sequence = sequence

                if previous_sequence is not None and sequence != previous_sequence + 1:
                    result.sequence_gaps.append(sequence)
                    logger.warning(
                        f"Sequence gap before {sequence}: previous record is {previous_sequence}",
                        extra={"event_type": "audit.chain.sequence_gap", "sequence_number": sequence},
                    )

                if row.previous_hash != expected_previous_hash:
                    result.broken_links.append(sequence)
                    logger.warning(
                        f"Chain break at sequence {sequence}: previous_hash mismatch",
                        extra={"event_type": "audit.chain.broken_link", "sequence_number": sequence},
                    )

                computed_hash = compute_record_hash(
                    action=row.action,
                    entity_type=row.entity_type,
                    entity_id=row.entity_id,
                    user_id=row.user_id,
                    old_values=row.old_values,
                    new_values=row.new_values,
                    previous_hash=expected_previous_hash,
                    timestamp=row.hashed_at,
                )

                if row.record_hash != computed_hash:
                    result.invalid_records.append(
                        InvalidRecord(
                            id=row.id,
                            sequence_number=sequence,
                            expected_hash=computed_hash,
                            actual_hash=row.record_hash,
                        )
                    )
                    logger.warning(
                        f"Invalid hash at sequence {sequence}: expected {computed_hash}, got {row.record_hash}",
                        extra={"event_type": "audit.chain.invalid_hash", "sequence_number": sequence},
                    )

                # Carry the stored hash forward so one bad record does not cascade
                expected_previous_hash = row.record_hash or computed_hash
                previous_sequence = sequence
                result.last_sequence = sequence
                result.checked_count += 1

            if len(rows) < self.batch_size:
                break
            cursor = rows[-1].sequence_number

        result.valid = not result.invalid_records
        return result

    def _finish(self, result: VerificationResult, duration: float) -> None:
        self.state.complete(result)
        track_chain_verification(result.valid, len(result.invalid_records), duration)

        outcome = "VALID" if result.valid else "INVALID"
        message = (
            f"Hash chain verification complete: {outcome} "
            f"({result.checked_count} records checked, {len(result.invalid_records)} invalid)"
        )
        extra = {
            "event_type": "audit.chain.verified" if result.valid else "audit.chain.invalid",
            "checked_count": result.checked_count,
            "first_sequence": result.first_sequence,
            "last_sequence": result.last_sequence,
            "invalid_count": len(result.invalid_records),
            "broken_link_count": len(result.broken_links),
        }
        if result.valid:
            logger.info(message, extra=extra)
        else:
            logger.error(message, extra=extra)


def build_verification_event(
    result: VerificationResult,
    trigger: str,
    context: dict[str, Any] | None = None,
    **scope: Any,
) -> dict[str, Any]:
    """Build the audit record describing a completed verification run.

    The run is itself written to the chain; an invalid run is CRITICAL so
    the critical-action alert rule fires. `context` carries the actor and
    client fields, `scope` is stored with the outcome.
    """
    return {
        **(context or {}),
        "action": AuditAction.AUDIT_CHAIN_VERIFIED.value,
        "entity_type": "AuditChain",
        "entity_id": f"{result.first_sequence or ''}-{result.last_sequence or ''}",
        "category": AuditCategory.SYSTEM,
        "severity": AuditSeverity.INFO if result.valid else AuditSeverity.CRITICAL,
        "new_values": {
            "trigger": trigger,
            "valid": result.valid,
            "checked_count": result.checked_count,
            "first_sequence": result.first_sequence,
            "last_sequence": result.last_sequence,
            "invalid_sequences": [r.sequence_number for r in result.invalid_records],
            "broken_links": result.broken_links,
            **scope,
        },
    }
