"""
Transaction CRUD Orchestrator.

Atomic creation and lifecycle management of transaction headers and their
lines:

    draft -> pending -> completed -> voided (terminal)
                            |
                            +--> REVERSE creates a separate transaction

Invariants:
    - CREATE writes the header and every line in one unit of work, or nothing
    - GL-typed transactions balance (DR total == CR total) before persisting
    - Voided transactions are hidden unless include_deleted is True, on every
      read path (see store/visibility.py)
    - external_reference is an idempotency key: a replay returns the
      existing transaction instead of creating a second one
    - Lines are never rewritten; corrections are reversal transactions

How to change safely:
    - New header fields flow through _build_header and Transaction
    - Keep VALIDATE on the same code path as CREATE (_prepare)
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from ..schema.types import ALLOWED_STATUS_TRANSITIONS, TransactionStatus
from ..store import DuplicateKeyError, StatusChangedError, Transaction, TransactionLine, utc_now
from ..store.visibility import DEFAULT_INCLUDE_DELETED
from .base import (
    CallContext,
    Orchestrator,
    check_filters,
    flag_arg,
    mapping_arg,
    optional_date,
    optional_str,
    page_args,
)
from .errors import (
    ENTITY_NOT_FOUND,
    INVALID_STATUS,
    INVALID_STATUS_TRANSITION,
    LINE_AMOUNT_REQUIRED,
    LINE_NUMBER_DUPLICATE,
    PATCH_FIELD_NOT_ALLOWED,
    PAYLOAD_INVALID,
    TXN_ALREADY_REVERSED,
    TXN_NOT_DELETABLE,
    TXN_NOT_FOUND,
    ConflictError,
    NotFoundError,
    ValidationError,
    require_str,
)
from .gl import ZERO, BalanceSummary, check_balance, to_decimal

logger = logging.getLogger(__name__)

PATCHABLE_FIELDS = frozenset({"transaction_status", "metadata", "transaction_code"})
QUERY_FILTERS = frozenset(
    {
        "source_entity_id",
        "target_entity_id",
        "transaction_type",
        "transaction_status",
        "smart_code_prefix",
        "date_from",
        "date_to",
    }
)
CREATABLE_STATUSES = frozenset(
    {TransactionStatus.DRAFT, TransactionStatus.PENDING, TransactionStatus.COMPLETED}
)
REVERSAL_REFERENCE_PREFIX = "REVERSAL:"


@dataclass
class PreparedTransaction:
    """A fully validated header and lines, not yet persisted."""

    header: Transaction
    lines: list[TransactionLine]
    balance: BalanceSummary

    def referenced_entities(self) -> list[str]:
        ids = [self.header.source_entity_id, self.header.target_entity_id]
        ids.extend(line.line_entity_id for line in self.lines)
        return [entity_id for entity_id in dict.fromkeys(ids) if entity_id]


def _number(value: Any, where: str) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(PAYLOAD_INVALID, f"{where} must be a number")
    return float(value)


def _status(value: Any) -> TransactionStatus:
    try:
        return TransactionStatus(value)
    except ValueError:
        raise ValidationError(
            INVALID_STATUS,
            f"unknown transaction status {value!r}",
            hint=f"Use one of: {', '.join(s.value for s in TransactionStatus)}",
        ) from None


def _not_found(transaction_id: str) -> NotFoundError:
    return NotFoundError(TXN_NOT_FOUND, f"transaction {transaction_id} not found")


def _render(header: Transaction, lines: list[TransactionLine] | None) -> dict[str, Any]:
    data: dict[str, Any] = {"header": header.to_dict()}
    if lines is not None:
        data["lines"] = [line.to_dict() for line in lines]
    return data


class TransactionOrchestrator(Orchestrator):
    """CREATE / EMIT / READ / QUERY / UPDATE / VOID / REVERSE / DELETE / VALIDATE."""

    resource = "transactions"
    actions = {
        "CREATE": "create",
        "EMIT": "create",
        "READ": "read",
        "QUERY": "query",
        "UPDATE": "update",
        "VOID": "void",
        "REVERSE": "reverse",
        "DELETE": "delete",
        "VALIDATE": "validate",
    }
    write_actions = frozenset({"CREATE", "EMIT", "UPDATE", "VOID", "REVERSE", "DELETE"})

    # ------------------------------------------------------------------
    # Preparation shared by CREATE and VALIDATE
    # ------------------------------------------------------------------

    def _build_lines(
        self,
        ctx: CallContext,
        transaction_id: str,
        raw_lines: Any,
        now: str,
    ) -> list[TransactionLine]:
        """Validate lines and assign missing line numbers in array order."""
        if raw_lines is None:
            return []
        if not isinstance(raw_lines, list):
            raise ValidationError(PAYLOAD_INVALID, "lines must be a list")

        explicit: set[int] = set()
        for index, raw in enumerate(raw_lines):
            if not isinstance(raw, dict):
                raise ValidationError(PAYLOAD_INVALID, f"lines[{index}] must be an object")
            number = raw.get("line_number")
            if number is None:
                continue
            if isinstance(number, bool) or not isinstance(number, int) or number < 1:
                raise ValidationError(
                    PAYLOAD_INVALID, f"lines[{index}].line_number must be a positive integer"
                )
            if number in explicit:
                raise ValidationError(LINE_NUMBER_DUPLICATE, f"line_number {number} is repeated")
            explicit.add(number)

        lines: list[TransactionLine] = []
        next_number = 1
        for index, raw in enumerate(raw_lines):
            where = f"lines[{index}]"
            number = raw.get("line_number")
            if number is None:
                while next_number in explicit:
                    next_number += 1
                number = next_number
                explicit.add(number)

            line_data = mapping_arg(raw, "line_data")
            side = line_data.get("side")
            line_type = raw.get("line_type") or (str(side).upper() if side else None)
            if not isinstance(line_type, str) or not line_type:
                raise ValidationError(PAYLOAD_INVALID, f"{where}.line_type is required")

            quantity = _number(raw.get("quantity"), f"{where}.quantity")
            unit_amount = _number(raw.get("unit_amount"), f"{where}.unit_amount")
            line_amount = _number(raw.get("line_amount"), f"{where}.line_amount")
            if line_amount is None:
                if quantity is None or unit_amount is None:
                    raise ValidationError(
                        LINE_AMOUNT_REQUIRED,
                        f"{where} needs line_amount or quantity and unit_amount",
                    )
                line_amount = float(to_decimal(quantity) * to_decimal(unit_amount))

            lines.append(
                TransactionLine(
                    id=str(uuid.uuid4()),
                    organization_id=ctx.organization_id,
                    transaction_id=transaction_id,
                    line_number=number,
                    line_type=line_type,
                    line_amount=line_amount,
                    smart_code=self.smart_codes.check(raw.get("smart_code"), f"{where}.smart_code"),
                    description=optional_str(raw, "description"),
                    line_entity_id=optional_str(raw, "line_entity_id"),
                    quantity=quantity,
                    unit_amount=unit_amount,
                    line_data=line_data,
                    created_at=now,
                )
            )
        return lines

    def _build_header(
        self,
        ctx: CallContext,
        transaction_id: str,
        header: dict[str, Any],
        lines: list[TransactionLine],
        now: str,
    ) -> Transaction:
        self.check_payload_org(ctx, header)
        transaction_type = require_str(header, "transaction_type")
        smart_code = self.smart_codes.check(header.get("smart_code"), "header.smart_code")
        status = _status(header.get("transaction_status", TransactionStatus.COMPLETED.value))
        if status not in CREATABLE_STATUSES:
            raise ValidationError(
                INVALID_STATUS, f"cannot create a transaction as {status.value}"
            )

        total_amount = _number(header.get("total_amount"), "header.total_amount")
        if total_amount is None:
            total_amount = float(sum((to_decimal(line.line_amount) for line in lines), ZERO))

        return Transaction(
            id=transaction_id,
            organization_id=ctx.organization_id,
            transaction_type=transaction_type,
            transaction_code=optional_str(header, "transaction_code"),
            smart_code=smart_code,
            transaction_status=status.value,
            total_amount=total_amount,
            transaction_date=optional_date(header, "transaction_date") or now,
            source_entity_id=optional_str(header, "source_entity_id"),
            target_entity_id=optional_str(header, "target_entity_id"),
            external_reference=optional_str(header, "external_reference"),
            metadata=mapping_arg(header, "metadata"),
            created_by=ctx.actor_user_id,
            updated_by=ctx.actor_user_id,
            created_at=now,
            updated_at=now,
        )

    def _prepare(self, ctx: CallContext, body: dict[str, Any]) -> PreparedTransaction:
        """Run every pure check of CREATE. Raises before anything is written."""
        header = body.get("header")
        if not isinstance(header, dict):
            raise ValidationError(PAYLOAD_INVALID, "header must be an object")
        now = utc_now()
        transaction_id = str(uuid.uuid4())
        lines = self._build_lines(ctx, transaction_id, body.get("lines"), now)
        txn = self._build_header(ctx, transaction_id, header, lines, now)
        balance = check_balance(txn.smart_code, txn.transaction_type, lines)
        if balance.is_gl and header.get("total_amount") is None:
            # A balanced journal's total is one side, not DR + CR
            txn.total_amount = float(balance.dr_total)
        return PreparedTransaction(txn, lines, balance)

    async def _require_entities(self, ctx: CallContext, prepared: PreparedTransaction) -> None:
        wanted = prepared.referenced_entities()
        found = await self.store.existing_entity_ids(ctx.organization_id, wanted)
        missing = [entity_id for entity_id in wanted if entity_id not in found]
        if missing:
            raise NotFoundError(ENTITY_NOT_FOUND, f"entity {missing[0]} not found")

    async def _replay(self, ctx: CallContext, external_reference: str) -> dict[str, Any] | None:
        existing = await self.store.find_transaction_by_external_reference(
            ctx.organization_id, external_reference
        )
        if existing is None:
            return None
        lines = await self.store.get_transaction_lines(ctx.organization_id, [existing.id])
        logger.info(
            "Idempotent replay",
            extra={
                "organization_id": ctx.organization_id,
                "transaction_id": existing.id,
                "external_reference": external_reference,
            },
        )
        return {
            "transaction_id": existing.id,
            "idempotent_replay": True,
            "data": _render(existing, lines[existing.id]),
        }

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def create(self, ctx: CallContext, payload: dict[str, Any]) -> dict[str, Any]:
        """Create a header and its lines atomically (also serves EMIT)."""
        prepared = self._prepare(ctx, payload)
        txn = prepared.header

        if txn.external_reference:
            replay = await self._replay(ctx, txn.external_reference)
            if replay is not None:
                return replay

        await self._require_entities(ctx, prepared)

        try:
            await self.store.create_transaction(txn, prepared.lines)
        except DuplicateKeyError:
            # Lost a race on the same external_reference
            if not txn.external_reference:
                raise
            replay = await self._replay(ctx, txn.external_reference)
            if replay is None:
                raise
            return replay

        logger.info(
            "Transaction created",
            extra={
                "organization_id": ctx.organization_id,
                "transaction_id": txn.id,
                "transaction_type": txn.transaction_type,
                "lines": len(prepared.lines),
                "is_gl": prepared.balance.is_gl,
            },
        )
        return {
            "transaction_id": txn.id,
            "idempotent_replay": False,
            "data": _render(txn, prepared.lines),
        }

    async def read(self, ctx: CallContext, payload: dict[str, Any]) -> dict[str, Any]:
        transaction_id = require_str(payload, "transaction_id")
        include_lines = flag_arg(payload, "include_lines", True)
        include_deleted = flag_arg(payload, "include_deleted", DEFAULT_INCLUDE_DELETED)

        txn = await self.store.get_transaction(
            ctx.organization_id, transaction_id, include_deleted=include_deleted
        )
        if txn is None:
            raise _not_found(transaction_id)

        lines = None
        if include_lines:
            lines = (await self.store.get_transaction_lines(ctx.organization_id, [txn.id]))[txn.id]
        return {"transaction_id": txn.id, "data": _render(txn, lines)}

    async def query(self, ctx: CallContext, payload: dict[str, Any]) -> dict[str, Any]:
        """Page of headers; lines for the whole page come from one batched read."""
        filters = mapping_arg(payload, "filters")
        check_filters(filters, QUERY_FILTERS)
        limit, offset = page_args(payload)
        include_lines = flag_arg(payload, "include_lines", False)
        include_deleted = flag_arg(payload, "include_deleted", DEFAULT_INCLUDE_DELETED)
        for key in ("source_entity_id", "target_entity_id", "transaction_type",
                    "transaction_status", "smart_code_prefix"):
            optional_str(filters, key)
        for key in ("date_from", "date_to"):
            optional_date(filters, key)
        if filters.get("transaction_status") is not None:
            _status(filters["transaction_status"])

        transactions, total = await self.store.query_transactions(
            ctx.organization_id,
            include_deleted=include_deleted,
            limit=limit,
            offset=offset,
            **filters,
        )

        items = [txn.to_dict() for txn in transactions]
        if include_lines and transactions:
            grouped = await self.store.get_transaction_lines(
                ctx.organization_id, [txn.id for txn in transactions]
            )
            for item in items:
                item["lines"] = [line.to_dict() for line in grouped[item["id"]]]

        return {"data": {"items": items, "total": total, "limit": limit, "offset": offset}}

    async def update(self, ctx: CallContext, payload: dict[str, Any]) -> dict[str, Any]:
        """Limited header update: status, metadata, transaction_code. Lines never change."""
        transaction_id = require_str(payload, "transaction_id")
        patch = mapping_arg(payload, "patch")
        unknown = sorted(set(patch) - PATCHABLE_FIELDS)
        if unknown:
            raise ValidationError(
                PATCH_FIELD_NOT_ALLOWED,
                f"cannot patch: {', '.join(unknown)}",
                hint=f"Patchable fields: {', '.join(sorted(PATCHABLE_FIELDS))}",
            )

        current = await self.store.get_transaction(ctx.organization_id, transaction_id)
        if current is None:
            raise _not_found(transaction_id)

        new_status = None
        if "transaction_status" in patch:
            target = _status(patch["transaction_status"])
            if target is TransactionStatus.VOIDED:
                raise ConflictError(
                    INVALID_STATUS_TRANSITION,
                    "transactions are voided through VOID, not UPDATE",
                    hint="Call VOID with a reason",
                )
            if target is not current.status:
                if target not in ALLOWED_STATUS_TRANSITIONS[current.status]:
                    raise ConflictError(
                        INVALID_STATUS_TRANSITION,
                        f"cannot move from {current.transaction_status} to {target.value}",
                    )
                if target is TransactionStatus.COMPLETED:
                    grouped = await self.store.get_transaction_lines(
                        ctx.organization_id, [current.id]
                    )
                    check_balance(current.smart_code, current.transaction_type, grouped[current.id])
            new_status = target.value

        transaction_code = patch.get("transaction_code")
        if transaction_code is not None and not isinstance(transaction_code, str):
            raise ValidationError(PAYLOAD_INVALID, "transaction_code must be a string")

        # The store re-checks the source status under its write lock
        try:
            txn = await self.store.update_transaction(
                ctx.organization_id,
                transaction_id,
                ctx.actor_user_id,
                transaction_status=new_status,
                transaction_code=transaction_code,
                metadata_patch=mapping_arg(patch, "metadata"),
                expected_status=current.transaction_status if new_status else None,
            )
        except StatusChangedError as e:
            raise ConflictError(
                INVALID_STATUS_TRANSITION,
                f"transaction {transaction_id} moved to {e.actual} while updating",
                hint="Read the transaction again and retry",
            ) from None
        if txn is None:
            raise _not_found(transaction_id)
        return {"transaction_id": txn.id, "data": _render(txn, None)}

    async def void(self, ctx: CallContext, payload: dict[str, Any]) -> dict[str, Any]:
        """Soft-delete. Idempotent: a second VOID reports already_voided."""
        transaction_id = require_str(payload, "transaction_id")
        reason = payload.get("reason")

        txn, already_voided = await self.store.void_transaction(
            ctx.organization_id, transaction_id, reason, ctx.actor_user_id
        )
        if txn is None:
            raise _not_found(transaction_id)
        return {
            "transaction_id": txn.id,
            "already_voided": already_voided,
            "data": _render(txn, None),
        }

    async def reverse(self, ctx: CallContext, payload: dict[str, Any]) -> dict[str, Any]:
        """Create a new transaction negating the original. The original is untouched."""
        transaction_id = require_str(payload, "transaction_id")
        original = await self.store.get_transaction(ctx.organization_id, transaction_id)
        if original is None:
            raise _not_found(transaction_id)
        if original.status is not TransactionStatus.COMPLETED:
            raise ConflictError(
                INVALID_STATUS_TRANSITION,
                f"only completed transactions can be reversed, not {original.transaction_status}",
                hint="Complete the transaction first, or DELETE an empty draft",
            )

        reference = f"{REVERSAL_REFERENCE_PREFIX}{original.id}"
        if await self.store.find_transaction_by_external_reference(ctx.organization_id, reference):
            raise ConflictError(
                TXN_ALREADY_REVERSED, f"transaction {transaction_id} is already reversed"
            )

        now = utc_now()
        reversal_id = str(uuid.uuid4())
        grouped = await self.store.get_transaction_lines(ctx.organization_id, [original.id])
        original_lines = grouped[original.id]
        lines = [
            TransactionLine(
                id=str(uuid.uuid4()),
                organization_id=ctx.organization_id,
                transaction_id=reversal_id,
                line_number=line.line_number,
                line_type=line.line_type,
                line_amount=-line.line_amount,
                smart_code=line.smart_code,
                description=line.description,
                line_entity_id=line.line_entity_id,
                quantity=line.quantity,
                unit_amount=-line.unit_amount if line.unit_amount is not None else None,
                line_data={**line.line_data, "reversal_of_line": line.id},
                created_at=now,
            )
            for line in original_lines
        ]
        reversal = Transaction(
            id=reversal_id,
            organization_id=ctx.organization_id,
            transaction_type=original.transaction_type,
            transaction_code=f"REV-{original.transaction_code or original.id[:8]}",
            smart_code=original.smart_code,
            transaction_status=TransactionStatus.COMPLETED.value,
            total_amount=-original.total_amount,
            transaction_date=now,
            source_entity_id=original.source_entity_id,
            target_entity_id=original.target_entity_id,
            external_reference=reference,
            metadata={"reversal_of": original.id, "reversal_reason": payload.get("reason")},
            created_by=ctx.actor_user_id,
            updated_by=ctx.actor_user_id,
            created_at=now,
            updated_at=now,
        )
        check_balance(reversal.smart_code, reversal.transaction_type, lines)

        try:
            await self.store.create_transaction(reversal, lines)
        except DuplicateKeyError:
            raise ConflictError(
                TXN_ALREADY_REVERSED, f"transaction {transaction_id} is already reversed"
            ) from None

        logger.info(
            "Transaction reversed",
            extra={
                "organization_id": ctx.organization_id,
                "transaction_id": original.id,
                "reversal_id": reversal_id,
            },
        )
        return {
            "transaction_id": reversal_id,
            "reversal_of": original.id,
            "data": _render(reversal, lines),
        }

    async def delete(self, ctx: CallContext, payload: dict[str, Any]) -> dict[str, Any]:
        """Hard delete. Only drafts with zero lines qualify."""
        transaction_id = require_str(payload, "transaction_id")
        txn = await self.store.get_transaction(ctx.organization_id, transaction_id)
        if txn is None:
            raise _not_found(transaction_id)

        if not await self.store.delete_draft_transaction(ctx.organization_id, transaction_id):
            raise ConflictError(
                TXN_NOT_DELETABLE,
                f"transaction {transaction_id} is {txn.transaction_status} or has lines",
                hint="Only empty drafts can be deleted; VOID or REVERSE instead",
            )
        return {"transaction_id": transaction_id, "deleted": True}

    async def validate(self, ctx: CallContext, payload: dict[str, Any]) -> dict[str, Any]:
        """Run CREATE's checks against a stored transaction or a draft. Writes nothing."""
        if payload.get("transaction_id"):
            transaction_id = require_str(payload, "transaction_id")
            txn = await self.store.get_transaction(ctx.organization_id, transaction_id)
            if txn is None:
                raise _not_found(transaction_id)
            lines = (await self.store.get_transaction_lines(ctx.organization_id, [txn.id]))[txn.id]
            self.smart_codes.check(txn.smart_code, "header.smart_code")
            for line in lines:
                self.smart_codes.check(line.smart_code, f"lines[{line.line_number}].smart_code")
            balance = check_balance(txn.smart_code, txn.transaction_type, lines)
        else:
            draft = payload.get("draft")
            if not isinstance(draft, dict):
                raise ValidationError(PAYLOAD_INVALID, "VALIDATE needs transaction_id or draft")
            prepared = self._prepare(ctx, draft)
            await self._require_entities(ctx, prepared)
            balance = prepared.balance

        return {"valid": True, **balance.to_dict()}
