import os
from dataclasses import dataclass
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name, default):
    value = os.environ.get(name, default)
    return tuple(item.strip() for item in value.split(",") if item.strip())


class Config:
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", "sqlite:///app.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Checkbox fiscal registrar
    CHECKBOX_API_URL = os.environ.get("CHECKBOX_API_URL", "https://api.checkbox.ua/api/v1")
    CHECKBOX_LICENSE_KEY = os.environ.get("CHECKBOX_LICENSE_KEY", "")
    CHECKBOX_LOGIN = os.environ.get("CHECKBOX_LOGIN", "")
    CHECKBOX_PASSWORD = os.environ.get("CHECKBOX_PASSWORD", "")
    CHECKBOX_TOKEN_TTL = int(os.environ.get("CHECKBOX_TOKEN_TTL", "3600"))

    # PrivatBank autoclient feed
    PRIVATBANK_API_URL = os.environ.get("PRIVATBANK_API_URL", "https://acp.privatbank.ua/api")
    PRIVATBANK_ID = os.environ.get("PRIVATBANK_ID", "")
    PRIVATBANK_TOKEN = os.environ.get("PRIVATBANK_TOKEN", "")
    PRIVATBANK_PAGE_LIMIT = int(os.environ.get("PRIVATBANK_PAGE_LIMIT", "100"))
    BANK_SYNC_ENABLED = _env_bool("BANK_SYNC_ENABLED", True)

    # Payments that never get a fiscal check
    EXCLUDED_PAYMENT_CODES = _env_list("EXCLUDED_PAYMENT_CODES", "2600,2902,2909,2920")
    NOVA_POSHTA_ACCOUNT = os.environ.get("NOVA_POSHTA_ACCOUNT", "UA813005280000026548000000014")

    MAX_TRANSACTION_AMOUNT = Decimal(os.environ.get("MAX_TRANSACTION_AMOUNT", "1000000"))
    DISPLAY_MAX_AMOUNT = Decimal(os.environ.get("DISPLAY_MAX_AMOUNT", "10000"))
    MATCH_LOOKBACK_DAYS = int(os.environ.get("MATCH_LOOKBACK_DAYS", "30"))

    ORDER_FETCH_GROUP_SIZE = int(os.environ.get("ORDER_FETCH_GROUP_SIZE", "5"))
    FISCAL_CALL_DELAY = float(os.environ.get("FISCAL_CALL_DELAY", "0.8"))
    HTTP_TIMEOUT = float(os.environ.get("HTTP_TIMEOUT", "30"))

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_JSON = _env_bool("LOG_JSON", False)


@dataclass(frozen=True)
class PaymentRules:
    """Exclusion data for check issuance, kept out of the decision logic."""

    excluded_codes: tuple = ()
    nova_poshta_account: str = ""

    @classmethod
    def from_config(cls, config):
        return cls(
            excluded_codes=tuple(config["EXCLUDED_PAYMENT_CODES"]),
            nova_poshta_account=config["NOVA_POSHTA_ACCOUNT"],
        )

    def is_nova_poshta(self, account):
        return bool(account) and account == self.nova_poshta_account

    def is_excluded_code(self, code):
        return code is not None and code in self.excluded_codes
