"""SQLite request store for zeromiles.

Durable local storage with:
- One transaction per state change (request + claim/escrow + audit entry)
- Compare-and-swap status updates, so several processes sharing the same
  database file still produce a single winner per transition
"""

import contextlib
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from zeromiles.config import get_zeromiles_home
from zeromiles.errors import PersistenceError, TxReferenceReusedError
from zeromiles.types import (
    Amount,
    EscrowRecord,
    FulfillmentClaim,
    HeldAsset,
    LoanRequest,
    RequestStateTransition,
    RequestStatus,
    require_transition,
)

from .schema import init_db

logger = logging.getLogger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def parse_datetime(s: Optional[str]) -> Optional[datetime]:
    """Parse ISO datetime string."""
    if not s:
        return None
    return datetime.fromisoformat(s.replace("Z", "+00:00"))


def _status_value(status) -> str:
    return status.value if isinstance(status, RequestStatus) else status


def _row_to_request(row: sqlite3.Row) -> LoanRequest:
    return LoanRequest(
        id=row["id"],
        status=row["status"],
        collateral_amount=Amount(row["collateral_value"], row["collateral_denom"]),
        requested_amount=Amount(row["requested_value"], row["requested_denom"]),
        recipient_address=row["recipient_address"],
        depositor=row["depositor"],
        target_chain=row["target_chain"],
        created_at=parse_datetime(row["created_at"]),
        updated_at=parse_datetime(row["updated_at"]),
        failure_reason=row["failure_reason"],
        refunded_at=parse_datetime(row["refunded_at"]),
    )


def _row_to_escrow(row: sqlite3.Row) -> EscrowRecord:
    return EscrowRecord(
        request_id=row["request_id"],
        held_asset=HeldAsset(
            id=row["held_asset_id"],
            amount=Amount(row["held_value"], row["held_denom"]),
            depositor=row["depositor"],
        ),
        created_at=parse_datetime(row["created_at"]),
    )


def _row_to_claim(row: sqlite3.Row) -> FulfillmentClaim:
    return FulfillmentClaim(
        id=row["id"],
        request_id=row["request_id"],
        foreign_tx_reference=row["foreign_tx_reference"],
        solver_identity=row["solver_identity"],
        claim_status=row["claim_status"],
        claimed_at=parse_datetime(row["claimed_at"]),
        resolved_at=parse_datetime(row["resolved_at"]),
        verification_attempts=row["verification_attempts"],
        last_error=row["last_error"],
    )


def _row_to_transition(row: sqlite3.Row) -> RequestStateTransition:
    return RequestStateTransition(
        id=row["id"],
        request_id=row["request_id"],
        from_status=row["from_status"],
        to_status=row["to_status"],
        actor=row["actor"],
        reason=row["reason"],
        created_at=parse_datetime(row["created_at"]),
    )


class SQLiteRequestStore:
    """SQLite-based request store.

    Connections are opened per operation; every public method is a single
    transaction.
    """

    # Seconds to wait on a locked database before failing
    BUSY_TIMEOUT = 10.0

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = Path(db_path) if db_path else get_zeromiles_home() / "loans.db"
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            init_db(conn)

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.BUSY_TIMEOUT)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Context manager that handles transactions AND closes connection.

        - Transaction commit on success
        - Transaction rollback on exception
        - Connection close in all cases
        """
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    @staticmethod
    def _insert_transition(conn: sqlite3.Connection, transition: RequestStateTransition) -> None:
        conn.execute(
            """INSERT INTO request_transitions
               (id, request_id, from_status, to_status, actor, reason, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                transition.id,
                transition.request_id,
                transition.from_status,
                transition.to_status,
                transition.actor,
                transition.reason,
                _iso(transition.created_at),
            ),
        )

    # === Requests ===

    def create_request(
        self,
        request: LoanRequest,
        escrow: EscrowRecord,
        transition: RequestStateTransition,
    ) -> None:
        try:
            with self._connect() as conn:
                self._insert_request(conn, request)
                conn.execute(
                    """INSERT INTO escrow_records
                       (request_id, held_asset_id, held_value, held_denom, depositor, created_at)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    (
                        escrow.request_id,
                        escrow.held_asset.id,
                        str(escrow.held_asset.amount.value),
                        escrow.held_asset.amount.denom,
                        escrow.held_asset.depositor,
                        _iso(escrow.created_at),
                    ),
                )
                self._insert_transition(conn, transition)
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to create loan request {request.id}: {e}") from e

    def _insert_request(self, conn: sqlite3.Connection, request: LoanRequest) -> None:
        conn.execute(
            """INSERT INTO loan_requests
                (id, status, collateral_value, collateral_denom, requested_value,
                 requested_denom, recipient_address, depositor, target_chain,
                 created_at, updated_at, failure_reason, refunded_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                request.id,
                request.status,
                str(request.collateral_amount.value),
                request.collateral_amount.denom,
                str(request.requested_amount.value),
                request.requested_amount.denom,
                request.recipient_address,
                request.depositor,
                request.target_chain,
                _iso(request.created_at),
                _iso(request.updated_at),
                request.failure_reason,
                _iso(request.refunded_at),
            ),
        )

    def get_request(self, request_id: str) -> Optional[LoanRequest]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM loan_requests WHERE id = ?", (request_id,)).fetchone()
        return _row_to_request(row) if row else None

    def scan_by_status(self, status: RequestStatus) -> List[LoanRequest]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM loan_requests WHERE status = ? ORDER BY created_at ASC",
                (_status_value(status),),
            ).fetchall()
        return [_row_to_request(r) for r in rows]

    def list_requests(
        self,
        status: Optional[RequestStatus] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[LoanRequest]:
        query = "SELECT * FROM loan_requests"
        params: list = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(_status_value(status))
        query += " ORDER BY created_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_request(r) for r in rows]

    def transition_status(
        self,
        request_id: str,
        expected: RequestStatus,
        transition: RequestStateTransition,
        claim: Optional[FulfillmentClaim] = None,
        failure_reason: Optional[str] = None,
    ) -> bool:
        require_transition(expected, transition.to_status)
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    """UPDATE loan_requests
                       SET status = ?, updated_at = ?, failure_reason = COALESCE(?, failure_reason)
                       WHERE id = ? AND status = ?""",
                    (
                        transition.to_status,
                        _iso(transition.created_at),
                        failure_reason,
                        request_id,
                        _status_value(expected),
                    ),
                )
                if cur.rowcount != 1:
                    return False
                if claim is not None:
                    self._write_claim(conn, claim)
                self._insert_transition(conn, transition)
                return True
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to transition loan request {request_id}: {e}") from e

    # === Claims ===

    @staticmethod
    def _write_claim(conn: sqlite3.Connection, claim: FulfillmentClaim) -> None:
        conn.execute(
            """UPDATE fulfillment_claims
               SET claim_status = ?, resolved_at = ?, verification_attempts = ?, last_error = ?
               WHERE id = ?""",
            (
                claim.claim_status,
                _iso(claim.resolved_at),
                claim.verification_attempts,
                claim.last_error,
                claim.id,
            ),
        )

    def record_claim(self, claim: FulfillmentClaim, transition: RequestStateTransition) -> bool:
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    """UPDATE loan_requests SET status = ?, updated_at = ?
                       WHERE id = ? AND status = ?""",
                    (
                        RequestStatus.CLAIMED.value,
                        _iso(transition.created_at),
                        claim.request_id,
                        RequestStatus.PENDING.value,
                    ),
                )
                if cur.rowcount != 1:
                    return False
                chain = conn.execute(
                    "SELECT target_chain FROM loan_requests WHERE id = ?", (claim.request_id,)
                ).fetchone()["target_chain"]
                used = conn.execute(
                    """SELECT request_id FROM fulfillment_claims
                       WHERE target_chain = ? AND foreign_tx_reference = ?""",
                    (chain, claim.foreign_tx_reference),
                ).fetchone()
                if used is not None:
                    # Raising rolls back the status update
                    raise TxReferenceReusedError(
                        claim.foreign_tx_reference, chain, used["request_id"]
                    )
                conn.execute(
                    """INSERT INTO fulfillment_claims
                       (id, request_id, target_chain, foreign_tx_reference, solver_identity,
                        claim_status, claimed_at, resolved_at, verification_attempts, last_error)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        claim.id,
                        claim.request_id,
                        chain,
                        claim.foreign_tx_reference,
                        claim.solver_identity,
                        claim.claim_status,
                        _iso(claim.claimed_at),
                        _iso(claim.resolved_at),
                        claim.verification_attempts,
                        claim.last_error,
                    ),
                )
                self._insert_transition(conn, transition)
                return True
        except sqlite3.IntegrityError:
            # A claim row already exists; the status update was rolled back
            return False
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to record claim for {claim.request_id}: {e}") from e

    def get_claim(self, request_id: str) -> Optional[FulfillmentClaim]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM fulfillment_claims WHERE request_id = ?", (request_id,)
            ).fetchone()
        return _row_to_claim(row) if row else None

    def update_claim(self, claim: FulfillmentClaim) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """UPDATE fulfillment_claims
                   SET verification_attempts = ?, last_error = ?
                   WHERE id = ? AND request_id = ? AND claim_status = 'pending'""",
                (claim.verification_attempts, claim.last_error, claim.id, claim.request_id),
            )
            return cur.rowcount == 1

    # === Escrow ===

    def get_escrow(self, request_id: str) -> Optional[EscrowRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM escrow_records WHERE request_id = ?", (request_id,)
            ).fetchone()
        return _row_to_escrow(row) if row else None

    def delete_escrow(self, request_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM escrow_records WHERE request_id = ?", (request_id,))
            return cur.rowcount == 1

    def mark_refunded(self, request_id: str, refunded_at: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """UPDATE loan_requests SET refunded_at = ?, updated_at = ?
                   WHERE id = ? AND refunded_at IS NULL
                   AND EXISTS (SELECT 1 FROM escrow_records WHERE request_id = ?)""",
                (_iso(refunded_at), _iso(refunded_at), request_id, request_id),
            )
            if cur.rowcount != 1:
                return False
            conn.execute("DELETE FROM escrow_records WHERE request_id = ?", (request_id,))
            return True

    def list_escrows(self, status: RequestStatus) -> List[EscrowRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT e.* FROM escrow_records e
                   JOIN loan_requests r ON r.id = e.request_id
                   WHERE r.status = ?
                   ORDER BY e.created_at ASC""",
                (_status_value(status),),
            ).fetchall()
        return [_row_to_escrow(r) for r in rows]

    # === Transitions ===

    def get_transitions(self, request_id: str) -> List[RequestStateTransition]:
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT * FROM request_transitions WHERE request_id = ?
                   ORDER BY created_at ASC, rowid ASC""",
                (request_id,),
            ).fetchall()
        return [_row_to_transition(r) for r in rows]
