"""
Tests for structured logging

Log lines must be valid JSON carrying the principal and action, and must
never contain secrets or full card numbers.
"""

import json
import logging
from decimal import Decimal

import pytest

from pharmacy_core.cards import CardVault
from pharmacy_core.config import reload_config
from pharmacy_core.credentials import CredentialVault, Principal, PrincipalKind, PrincipalRegistry
from pharmacy_core.hashing import PasswordHasher
from pharmacy_core.ledger import LedgerAccount
from pharmacy_core.logging_config import log_action, setup_logging, setup_logging_from_config


@pytest.fixture
def log_file(tmp_path):
    path = tmp_path / "pharmacy.log"
    logger = setup_logging("DEBUG", logger_name="pharmacy", log_file=str(path))
    yield path
    for handler in logger.handlers[:]:
        handler.close()
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)
    logger.propagate = True


def read_lines(path):
    return [json.loads(line) for line in path.read_text().splitlines() if line]


class TestJSONLogging:
    """Test JSON output"""
    
    def test_log_action_fields(self, log_file):
        """Test structured fields are emitted and empty ones dropped"""
        log_action(logging.getLogger("pharmacy.test"), "info", "Something happened",
                   principal="fatima", action="test_action", extra={"count": 2})
        
        entry = read_lines(log_file)[-1]
        assert entry["message"] == "Something happened"
        assert entry["level"] == "INFO"
        assert entry["logger"] == "pharmacy.test"
        assert entry["principal"] == "fatima"
        assert entry["action"] == "test_action"
        assert entry["extra"] == {"count": 2}
        assert "resource" not in entry
    
    def test_disabled_level_skipped(self, tmp_path):
        """Test records below the logger level are not written"""
        path = tmp_path / "quiet.log"
        logger = setup_logging("WARNING", logger_name="pharmacy.quiet", log_file=str(path))
        
        log_action(logger, "info", "hidden")
        log_action(logger, "warning", "shown")
        for handler in logger.handlers:
            handler.flush()
        
        assert [e["message"] for e in read_lines(path)] == ["shown"]
    
    def test_text_format(self, tmp_path):
        """Test the plain text format"""
        path = tmp_path / "text.log"
        logger = setup_logging("INFO", logger_name="pharmacy.text", log_format="text",
                               log_file=str(path))
        logger.info("plain line")
        
        assert "INFO pharmacy.text: plain line" in path.read_text()
    
    def test_setup_from_config(self, monkeypatch, tmp_path):
        """Test configuration drives the logger"""
        path = tmp_path / "configured.log"
        monkeypatch.setenv("PHARMACY_LOG_LEVEL", "ERROR")
        monkeypatch.setenv("PHARMACY_LOG_FILE", str(path))
        reload_config()
        try:
            logger = setup_logging_from_config()
            assert logger.level == logging.ERROR
            assert isinstance(logger.handlers[0], logging.FileHandler)
        finally:
            for handler in logger.handlers[:]:
                handler.close()
                logger.removeHandler(handler)
            logger.setLevel(logging.NOTSET)
            logger.propagate = True
            monkeypatch.delenv("PHARMACY_LOG_LEVEL")
            monkeypatch.delenv("PHARMACY_LOG_FILE")
            reload_config()


class TestNoSensitiveData:
    """Test secrets and card numbers stay out of logs"""
    
    def test_login_logs_have_no_secrets(self, log_file):
        """Test neither attempted nor stored secrets are logged"""
        hasher = PasswordHasher(n=1024)
        registry = PrincipalRegistry(PrincipalKind.DOCTOR)
        doctor = Principal("dr_amr", hasher.hash_to_string("doc-secret"), PrincipalKind.DOCTOR)
        registry.add(doctor)
        vault = CredentialVault(hasher=hasher)
        
        vault.authenticate(registry.lookup, "dr_amr", "wrong-guess")
        vault.authenticate(registry.lookup, "dr_amr", "doc-secret")
        
        text = log_file.read_text()
        assert "wrong-guess" not in text
        assert "doc-secret" not in text
        assert doctor.secret not in text
        assert {e["action"] for e in read_lines(log_file)} >= {"login_failed", "login_success"}
    
    def test_card_logs_masked(self, log_file):
        """Test card events log the mask only"""
        vault = CardVault("p1", fingerprint_key="k", number_length=16)
        vault.add_card("4111111111111111", "Mona Adel", "12/99")
        
        text = log_file.read_text()
        assert "4111111111111111" not in text
        assert "**** **** **** 1111" in text
    
    def test_ledger_logs(self, log_file):
        """Test ledger commits are logged with the owner"""
        LedgerAccount("p1").deposit(Decimal("5"))
        
        entry = read_lines(log_file)[-1]
        assert entry["principal"] == "p1"
        assert entry["action"] == "deposit"
