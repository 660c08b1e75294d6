"""
Ledger configuration.

Values come from the process environment, optionally seeded from a .env
file (python-dotenv), the same way the API server bootstrap reads
MONGO_URL / DB_NAME.
"""

from dotenv import load_dotenv
from pydantic import BaseModel
from pathlib import Path
from typing import Optional, Union
import logging
import os

ROOT_DIR = Path(__file__).parent.parent

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class LedgerSettings(BaseModel):
    mongo_url: Optional[str] = None
    db_name: Optional[str] = None
    max_transaction_retries: int = 5
    retry_delay_ms: int = 100
    default_currency: str = "ILS"
    open_invoices_limit: int = 20
    log_level: str = "INFO"


def load_settings(env_file: Optional[Union[str, Path]] = None) -> LedgerSettings:
    """
    Build settings from the environment.
    A .env file never overrides variables already set in the process.
    """
    load_dotenv(env_file or ROOT_DIR / '.env')

    return LedgerSettings(
        mongo_url=os.environ.get('MONGO_URL'),
        db_name=os.environ.get('DB_NAME'),
        max_transaction_retries=int(os.environ.get('LEDGER_MAX_TRANSACTION_RETRIES', 5)),
        retry_delay_ms=int(os.environ.get('LEDGER_RETRY_DELAY_MS', 100)),
        default_currency=os.environ.get('LEDGER_DEFAULT_CURRENCY', 'ILS').upper(),
        open_invoices_limit=int(os.environ.get('LEDGER_OPEN_INVOICES_LIMIT', 20)),
        log_level=os.environ.get('LOG_LEVEL', 'INFO').upper(),
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT
    )
