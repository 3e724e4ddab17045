"""
General-ledger balance rules.

A transaction is GL-typed when its smart code carries a GL segment, its
transaction_type is a journal type, or any of its lines is tagged with a
side. Every line of a GL-typed transaction must be tagged DR or CR, and
the DR total must equal the CR total.

Amounts are summed as Decimal built from their string form so that
33.33 + 33.33 + 33.34 balances against 100.00 exactly.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from ..schema.smart_code import classify
from ..schema.types import GlSide
from ..store import TransactionLine
from .errors import GL_IMBALANCE, GL_LINE_SIDE_REQUIRED, ConflictError

GL_TRANSACTION_TYPES = frozenset({"GL_JOURNAL", "JOURNAL_ENTRY", "GL_POSTING"})

ZERO = Decimal("0")


@dataclass(frozen=True)
class BalanceSummary:
    is_gl: bool
    dr_total: Decimal
    cr_total: Decimal
    line_count: int

    @property
    def balanced(self) -> bool:
        return self.dr_total == self.cr_total

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_gl": self.is_gl,
            "dr_total": float(self.dr_total),
            "cr_total": float(self.cr_total),
            "line_count": self.line_count,
        }


def to_decimal(amount: float | int | None) -> Decimal:
    return ZERO if amount is None else Decimal(str(amount))


def line_side(line: TransactionLine) -> GlSide | None:
    """Side from line_data.side, falling back to a DR/CR line_type."""
    raw = line.line_data.get("side")
    if raw is None and line.line_type.upper() in ("DR", "CR"):
        raw = line.line_type
    if raw is None:
        return None
    try:
        return GlSide(str(raw).upper())
    except ValueError:
        raise ConflictError(
            GL_LINE_SIDE_REQUIRED,
            f"line {line.line_number} has invalid side {raw!r}",
            hint="Use DR or CR",
        ) from None


def is_gl_transaction(
    smart_code: str,
    transaction_type: str,
    lines: Sequence[TransactionLine],
) -> bool:
    if transaction_type.upper() in GL_TRANSACTION_TYPES:
        return True
    try:
        if classify(smart_code, strict=False).is_gl:
            return True
    except ValueError:
        pass
    return any(line_side(line) is not None for line in lines)


def check_balance(
    smart_code: str,
    transaction_type: str,
    lines: Sequence[TransactionLine],
) -> BalanceSummary:
    """Enforce DR/CR tagging and balance for GL-typed transactions.

    Raises:
        ConflictError: GL_LINE_SIDE_REQUIRED or GL_IMBALANCE
    """
    if not is_gl_transaction(smart_code, transaction_type, lines):
        return BalanceSummary(False, ZERO, ZERO, len(lines))

    dr_total = ZERO
    cr_total = ZERO
    for line in lines:
        side = line_side(line)
        if side is None:
            raise ConflictError(
                GL_LINE_SIDE_REQUIRED,
                f"line {line.line_number} of a GL transaction has no DR/CR side",
                hint="Set line_data.side to DR or CR on every line",
            )
        if side is GlSide.DR:
            dr_total += to_decimal(line.line_amount)
        else:
            cr_total += to_decimal(line.line_amount)

    summary = BalanceSummary(True, dr_total, cr_total, len(lines))
    if not summary.balanced:
        raise ConflictError(
            GL_IMBALANCE,
            f"debits {dr_total} do not equal credits {cr_total}",
            hint="Adjust line amounts so DR and CR totals match",
            context={"dr_total": float(dr_total), "cr_total": float(cr_total)},
        )
    return summary
