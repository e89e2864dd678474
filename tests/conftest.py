"""Pytest bootstrap configuration.

Settings are read once at import time, so the environment has to be in place before
any ``stablepay`` module is collected.
"""
import os
import tempfile
from pathlib import Path

_DB_DIR = Path(tempfile.mkdtemp(prefix="stablepay-tests-"))

os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_DB_DIR / 'test.db'}")
os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("LOGGING__JSON_LOGS", "false")
os.environ.setdefault("TREASURY_ADDRESS", "0x1111111111111111111111111111111111111111")

import pytest  # noqa: E402

from stablepay.upi import parse_and_validate_qr  # noqa: E402

DYNAMIC_QR = "upi://pay?pa=shop@okaxis&pn=Corner%20Shop&am=250.00&cu=INR&mc=5411&tr=TXN_1"
PERSONAL_QR = "upi://pay?pa=friend@oksbi&pn=Friend"


@pytest.fixture
def dynamic_qr():
    return parse_and_validate_qr(DYNAMIC_QR)


@pytest.fixture
def personal_qr():
    return parse_and_validate_qr(PERSONAL_QR)
