"""
Check state of a payment.

The check state is stored twice: on the bank transaction (authoritative, newer)
and on the payment match (legacy fallback). Every reader goes through
``resolve_check_fields`` and every writer through ``transition`` +
``persist_check_state``; nothing else should look at the raw columns.
"""

import enum
from dataclasses import dataclass
from typing import Optional

from fiscalmatch.exceptions import IllegalCheckTransition


class CheckStateKind(enum.Enum):
    NEEDS_CHECK = "needs_check"
    EXCLUDED = "excluded"
    NOVA_POSHTA = "nova_poshta"
    SKIPPED = "skipped"
    ISSUED = "issued"


TERMINAL_KINDS = {CheckStateKind.SKIPPED, CheckStateKind.ISSUED}


@dataclass(frozen=True)
class IssuedReceipt:
    receipt_id: Optional[str]
    issued_at: Optional[object] = None
    fiscal_code: Optional[str] = None
    receipt_url: Optional[str] = None

    def to_dict(self):
        return {
            "receiptId": self.receipt_id,
            "fiscalCode": self.fiscal_code,
            "receiptUrl": self.receipt_url,
            "issuedAt": self.issued_at.isoformat() if self.issued_at else None,
        }


@dataclass(frozen=True)
class CheckState:
    kind: CheckStateKind
    reason: Optional[str] = None
    receipt: Optional[IssuedReceipt] = None

    @property
    def is_terminal(self):
        return self.kind in TERMINAL_KINDS

    @classmethod
    def needs_check(cls):
        return cls(CheckStateKind.NEEDS_CHECK)

    @classmethod
    def excluded(cls, reason):
        return cls(CheckStateKind.EXCLUDED, reason=reason)

    @classmethod
    def nova_poshta(cls, reason):
        return cls(CheckStateKind.NOVA_POSHTA, reason=reason)

    @classmethod
    def skipped(cls, reason):
        return cls(CheckStateKind.SKIPPED, reason=reason)

    @classmethod
    def issued(cls, receipt):
        return cls(CheckStateKind.ISSUED, receipt=receipt)


@dataclass(frozen=True)
class CheckFields:
    """Check columns merged from both records, transaction first."""

    receipt_id: Optional[str] = None
    issued_at: Optional[object] = None
    fiscal_code: Optional[str] = None
    receipt_url: Optional[str] = None
    skip_reason: Optional[str] = None
    skipped: bool = False

    @property
    def issued(self):
        return bool(self.receipt_id or self.issued_at)


def resolve_check_fields(transaction, match=None):
    issued_on_tx = bool(transaction.check_receipt_id or transaction.check_issued_at)
    issued_on_match = match is not None and bool(
        match.check_issued or match.check_receipt_id or match.check_issued_at
    )

    if issued_on_tx:
        return CheckFields(
            receipt_id=transaction.check_receipt_id or (match.check_receipt_id if match else None),
            issued_at=transaction.check_issued_at or (match.check_issued_at if match else None),
            # fiscal code and url only ever lived on the match
            fiscal_code=match.check_fiscal_code if match else None,
            receipt_url=match.check_receipt_url if match else None,
        )
    if issued_on_match:
        return CheckFields(
            receipt_id=match.check_receipt_id,
            issued_at=match.check_issued_at,
            fiscal_code=match.check_fiscal_code,
            receipt_url=match.check_receipt_url,
        )

    if transaction.check_skip_reason:
        return CheckFields(skip_reason=transaction.check_skip_reason, skipped=True)
    if match is not None and (match.check_skipped or match.check_skip_reason):
        return CheckFields(skip_reason=match.check_skip_reason or "Skipped", skipped=True)

    return CheckFields()


def extract_payment_code(account):
    """
    4-digit payment code of a Ukrainian IBAN, characters 15..18.

    UA293052990000029023866100110 -> "2902". Shorter strings have no code.
    The offset is tied to the IBAN layout, not to a business rule.
    """
    if not account or len(account) < 19:
        return None
    return account[15:19]


def nova_poshta_reason():
    return "Check issuance not allowed for Nova Poshta payments"


def excluded_code_reason(code, rules):
    return (
        f"Check issuance not allowed for payment code {code} "
        f"(codes {', '.join(rules.excluded_codes)} don't require checks)"
    )


def resolve_check_state(transaction, match, rules):
    fields = resolve_check_fields(transaction, match)
    if fields.issued:
        return CheckState.issued(IssuedReceipt(
            receipt_id=fields.receipt_id,
            issued_at=fields.issued_at,
            fiscal_code=fields.fiscal_code,
            receipt_url=fields.receipt_url,
        ))

    account = transaction.counterparty_account or ""
    if rules.is_nova_poshta(account):
        return CheckState.nova_poshta(nova_poshta_reason())

    code = extract_payment_code(account)
    if rules.is_excluded_code(code):
        return CheckState.excluded(excluded_code_reason(code, rules))

    if fields.skipped:
        return CheckState.skipped(fields.skip_reason)

    return CheckState.needs_check()


_ALLOWED = {
    CheckStateKind.NEEDS_CHECK: {CheckStateKind.SKIPPED, CheckStateKind.ISSUED},
    CheckStateKind.EXCLUDED: {CheckStateKind.SKIPPED},
    CheckStateKind.NOVA_POSHTA: {CheckStateKind.SKIPPED},
    CheckStateKind.SKIPPED: set(),
    CheckStateKind.ISSUED: set(),
}


def transition(current, target):
    if target.kind not in _ALLOWED[current.kind]:
        raise IllegalCheckTransition(current, target)
    return target


def persist_check_state(state, transaction=None, match=None):
    """Copy a terminal state onto whichever records are given. Does not commit."""
    if state.kind == CheckStateKind.ISSUED:
        receipt = state.receipt
        if match is not None:
            match.check_issued = True
            match.check_issued_at = receipt.issued_at
            match.check_receipt_id = receipt.receipt_id
            match.check_fiscal_code = receipt.fiscal_code
            match.check_receipt_url = receipt.receipt_url
        if transaction is not None:
            transaction.check_receipt_id = receipt.receipt_id
            transaction.check_issued_at = receipt.issued_at
    elif state.kind == CheckStateKind.SKIPPED:
        if match is not None:
            match.check_skipped = True
            match.check_skip_reason = state.reason
        if transaction is not None:
            transaction.check_skip_reason = state.reason
    else:
        raise ValueError(f"Only terminal states are persisted, got {state.kind.value}")
