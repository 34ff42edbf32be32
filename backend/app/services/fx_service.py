"""
Foreign exchange service for currency conversion.

The ledger converts each amount once, at record time, and stores the rate it
used; nothing is re-converted later.
"""
import logging
import threading
from datetime import date
from decimal import Decimal
from typing import Dict, Optional, Tuple

import httpx

from app.core.config import settings
from app.core.errors import ConversionFailed
from app.core.money import normalize_currency, quantize, to_decimal

logger = logging.getLogger(__name__)


class CurrencyConverter:
    """Interface for converting an amount between currencies."""

    def convert(self, amount: Decimal, from_currency: str, to_currency: str) -> Tuple[Decimal, Decimal]:
        """
        Returns (converted amount rounded to the target currency, rate used)
        where 1 unit of from_currency = rate to_currency.

        Raises:
            ConversionFailed: the rate could not be obtained
        """
        raise NotImplementedError


class ExchangeRateApiConverter(CurrencyConverter):
    """
    Converter backed by ExchangeRate-API v6.

    Uses /latest/{currency}. Rates are cached per (from, to, day) for the
    lifetime of the process.

    API Documentation: https://www.exchangerate-api.com/docs/latest-rates
    """

    def __init__(
        self,
        api_key: str = None,
        api_url: str = None,
        timeout: float = None,
        client: Optional[httpx.Client] = None,
    ):
        self.api_key = settings.FX_API_KEY if api_key is None else api_key
        self.api_url = (api_url or settings.FX_API_URL).rstrip("/")
        self.timeout = settings.FX_TIMEOUT_SECONDS if timeout is None else timeout
        self.client = client
        self._cache: Dict[Tuple[str, str, date], Decimal] = {}
        self._lock = threading.Lock()

    def convert(self, amount, from_currency: str, to_currency: str) -> Tuple[Decimal, Decimal]:
        from_currency = normalize_currency(from_currency)
        to_currency = normalize_currency(to_currency)
        amount = to_decimal(amount)

        if from_currency == to_currency:
            return quantize(amount, to_currency), Decimal(1)

        rate = self.get_rate(from_currency, to_currency)
        return quantize(amount * rate, to_currency), rate

    def get_rate(self, from_currency: str, to_currency: str) -> Decimal:
        key = (from_currency, to_currency, date.today())
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached

        rate = self._fetch_rate(from_currency, to_currency)
        with self._lock:
            self._cache[key] = rate
        return rate

    def _fetch_rate(self, from_currency: str, to_currency: str) -> Decimal:
        if not self.api_key:
            logger.error("FX_API_KEY is not configured. Please set it in .env file.")
            raise ConversionFailed("FX_API_KEY is required for ExchangeRate-API")

        # https://v6.exchangerate-api.com/v6/{API_KEY}/latest/{CURRENCY}
        api_url = f"{self.api_url}/{self.api_key}/latest/{from_currency}"
        logger.info(f"Fetching latest exchange rate from ExchangeRate-API for {from_currency}")

        try:
            if self.client is not None:
                response = self.client.get(api_url, timeout=self.timeout)
            else:
                response = httpx.get(api_url, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error with ExchangeRate-API: {e.response.status_code} - {e.response.text}")
            raise ConversionFailed(f"ExchangeRate-API HTTP error: {e.response.status_code}") from e
        except httpx.HTTPError as e:
            # Network, timeout, etc.
            logger.error(f"HTTP error with ExchangeRate-API: {e}")
            raise ConversionFailed(f"ExchangeRate-API network error: {e}") from e
        except ValueError as e:
            logger.error(f"Malformed response from ExchangeRate-API: {e}")
            raise ConversionFailed("ExchangeRate-API returned malformed JSON") from e

        if settings.DEBUG:
            logger.debug(f"ExchangeRate-API response: {data}")

        if data.get("result") != "success":
            error_msg = data.get("error-type", "Unknown error")
            logger.error(f"ExchangeRate-API returned error: {error_msg}")
            raise ConversionFailed(f"ExchangeRate-API error: {error_msg}")

        # {"conversion_rates": {"USD": 1, "KRW": 1350.2, ...}} with from_currency as base
        raw_rate = data.get("conversion_rates", {}).get(to_currency)
        if raw_rate is None:
            logger.error(f"{to_currency} not found in conversion_rates")
            raise ConversionFailed(f"{to_currency} rate not available in API response")

        rate = Decimal(str(raw_rate))
        if rate <= 0:
            logger.error(f"Invalid rate: {rate}")
            raise ConversionFailed(f"Invalid exchange rate: {rate}")

        logger.info(f"Successfully fetched rate from ExchangeRate-API: {from_currency} = {rate} {to_currency}")
        return rate
