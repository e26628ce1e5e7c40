"""
Card Payment Gateway Module

Card payments go to an external gateway rather than through the wallet
balance. ``HttpCardPaymentGateway`` talks to a REST gateway with httpx;
``MockCardPaymentGateway`` approves payments locally for tests and demos.
Gateway problems are reported as declined responses, never raised.
"""

import httpx
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional

from .currency import Money

logger = logging.getLogger("pharmacy.gateway")


@dataclass
class GatewayResponse:
    """Result from the card gateway"""
    approved: bool
    authorization_id: Optional[str] = None
    reason: str = ""
    latency_ms: float = 0.0


class CardPaymentGateway(ABC):
    """External capability that authorizes and charges stored cards"""
    
    @abstractmethod
    def authorize(self, card_fingerprint: str, amount: Money, reference: str) -> GatewayResponse:
        """Reserve ``amount`` on the card identified by ``card_fingerprint``"""
        pass
    
    @abstractmethod
    def charge(self, authorization_id: str, amount: Money) -> GatewayResponse:
        """Capture a previous authorization"""
        pass


class HttpCardPaymentGateway(CardPaymentGateway):
    """REST client for a card payment gateway"""
    
    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        api_key: Optional[str] = None,
        client: Optional[httpx.Client] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.api_key = api_key
        self._client = client or httpx.Client(timeout=timeout)
    
    @classmethod
    def from_config(cls, cfg=None) -> Optional['HttpCardPaymentGateway']:
        """Gateway from configuration, or None when no URL is configured"""
        if cfg is None:
            from .config import get_config
            cfg = get_config()
        if not cfg.gateway_url:
            return None
        return cls(cfg.gateway_url, timeout=cfg.gateway_timeout,
                   api_key=cfg.gateway_api_key or None)
    
    def authorize(self, card_fingerprint: str, amount: Money, reference: str) -> GatewayResponse:
        return self._post("/authorize", {
            "card_token": card_fingerprint,
            "amount": str(amount.amount),
            "currency": amount.currency.code,
            "reference": reference,
        })
    
    def charge(self, authorization_id: str, amount: Money) -> GatewayResponse:
        return self._post("/charge", {
            "authorization_id": authorization_id,
            "amount": str(amount.amount),
            "currency": amount.currency.code,
        })
    
    def _post(self, path: str, payload: dict) -> GatewayResponse:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        
        start = time.time()
        try:
            response = self._client.post(f"{self.base_url}{path}", json=payload, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Card gateway connection failed: {e}")
            return GatewayResponse(approved=False, reason="gateway_unavailable")
        
        latency_ms = (time.time() - start) * 1000
        if response.status_code != 200:
            logger.warning(f"Card gateway returned {response.status_code} for {path}")
            return GatewayResponse(approved=False, reason=f"gateway_http_{response.status_code}",
                                   latency_ms=latency_ms)
        
        try:
            data = response.json()
        except ValueError:
            logger.warning(f"Card gateway sent a non-JSON body for {path}")
            return GatewayResponse(approved=False, reason="gateway_bad_response",
                                   latency_ms=latency_ms)
        
        return GatewayResponse(
            approved=str(data.get("status", "")).upper() == "APPROVED",
            authorization_id=data.get("authorization_id"),
            reason=data.get("reason", ""),
            latency_ms=latency_ms,
        )
    
    def health_check(self) -> bool:
        """Check if the gateway is reachable"""
        try:
            r = self._client.get(f"{self.base_url}/health")
            return r.status_code == 200
        except httpx.HTTPError:
            return False
    
    def close(self):
        """Close the HTTP client"""
        self._client.close()


@dataclass
class MockCardPaymentGateway(CardPaymentGateway):
    """Local gateway that approves amounts up to ``limit`` and records calls"""
    limit: Decimal = Decimal("50000.00")
    declined_cards: List[str] = field(default_factory=list)
    authorizations: Dict[str, Money] = field(default_factory=dict)
    charges: List[str] = field(default_factory=list)
    
    def authorize(self, card_fingerprint: str, amount: Money, reference: str) -> GatewayResponse:
        if card_fingerprint in self.declined_cards:
            return GatewayResponse(approved=False, reason="card_declined", latency_ms=1.0)
        if amount.amount > self.limit:
            return GatewayResponse(approved=False, reason="limit_exceeded", latency_ms=1.0)
        authorization_id = str(uuid.uuid4())
        self.authorizations[authorization_id] = amount
        return GatewayResponse(approved=True, authorization_id=authorization_id, latency_ms=1.0)
    
    def charge(self, authorization_id: str, amount: Money) -> GatewayResponse:
        authorized = self.authorizations.get(authorization_id)
        if authorized is None or amount > authorized:
            return GatewayResponse(approved=False, reason="unknown_authorization", latency_ms=1.0)
        self.charges.append(authorization_id)
        return GatewayResponse(approved=True, authorization_id=authorization_id, latency_ms=1.0)
