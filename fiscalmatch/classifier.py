from dataclasses import dataclass

from fiscalmatch.check_state import extract_payment_code, resolve_check_fields

CHECK_ISSUED = 'check_issued'
NOVA_POSHTA = 'nova_poshta'
EXCLUDED_CODE = 'excluded_code'
SKIPPED = 'skipped'
MATCHED_ORDER = 'matched_order'
NEEDS_CHECK = 'needs_check'

STATUSES = (CHECK_ISSUED, NOVA_POSHTA, EXCLUDED_CODE, SKIPPED, MATCHED_ORDER, NEEDS_CHECK)


@dataclass(frozen=True)
class PaymentStatus:
    status: str
    reason: str
    can_issue_check: bool
    badge_tone: str

    def to_dict(self):
        return {
            "status": self.status,
            "statusReason": self.reason,
            "statusBadgeTone": self.badge_tone,
            "canIssueCheck": self.can_issue_check,
        }


def matched_order_id(transaction, match=None):
    return transaction.matched_order_id or (match.order_id if match is not None else None)


def classify(transaction, match=None, rules=None):
    # Order matters: first rule that applies wins
    fields = resolve_check_fields(transaction, match)
    if fields.issued:
        return PaymentStatus(CHECK_ISSUED, 'Check issued', False, 'success')

    account = transaction.counterparty_account or ''
    if rules is not None and rules.is_nova_poshta(account):
        return PaymentStatus(NOVA_POSHTA, 'Nova Poshta', False, 'info')

    code = extract_payment_code(account)
    if rules is not None and rules.is_excluded_code(code):
        return PaymentStatus(EXCLUDED_CODE, f'Code {code}', False, 'warning')

    if fields.skipped:
        return PaymentStatus(SKIPPED, 'Skipped', False, 'attention')

    if matched_order_id(transaction, match):
        return PaymentStatus(MATCHED_ORDER, 'Matched', True, 'info')

    return PaymentStatus(NEEDS_CHECK, 'Needs check', True, 'critical')
