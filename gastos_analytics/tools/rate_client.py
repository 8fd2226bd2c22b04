"""Currency rate source: live feeds with configured fallbacks"""

import requests
from datetime import datetime
from typing import Dict, Any, Optional, Tuple

from gastos_analytics.constants import (
    CANONICAL_CURRENCY,
    CANONICAL_ALIASES,
    INDEXED_UNIT_CODES,
    FALLBACK_RATES,
    FALLBACK_INDEXED_UNIT_RATE,
)
from gastos_analytics.models.rates import RateTable
from gastos_analytics.utils.errors import RateSourceError, AnalyticsPipelineError
from gastos_analytics.utils.logging import get_logger
from gastos_analytics.utils.metrics import rate_source_fallbacks
from gastos_analytics.orchestrator.retry_handler import retry_with_exponential_backoff

logger = get_logger(__name__)

DEFAULT_RATES_URL = "https://trustpilot.digitalshopuy.com/currency/all"
DEFAULT_INDEXED_UNIT_URL = "https://api.cambio-uruguay.com/exchange/bcu/UI"
REQUEST_TIMEOUT_SECONDS = 10


def _get_json(url: str, timeout: int) -> Dict[str, Any]:
    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
        return response.json()
    except requests.RequestException as e:
        raise RateSourceError(f"Request to {url} failed: {e}")
    except ValueError as e:
        raise RateSourceError(f"Invalid JSON from {url}: {e}")


def fetch_currency_rates(
    url: str = DEFAULT_RATES_URL,
    canonical: str = CANONICAL_CURRENCY,
    timeout: int = REQUEST_TIMEOUT_SECONDS
) -> Tuple[Dict[str, float], Optional[datetime]]:
    """
    Fetch the latest rates and express them in canonical units per unit.

    The feed is quoted against a base currency (USD):
    {'success': true, 'base': 'USD', 'rates': {'EUR': {'from': 0.92, ...}, ...}}
    where 'from' is units of the currency per base unit.

    Returns:
        (rates mapping, as-of timestamp or None)

    Raises:
        RateSourceError: If the feed is unreachable or malformed
    """
    logger.info("Fetching currency exchange rates", url=url)
    data = _get_json(url, timeout)

    if not data.get("success"):
        raise RateSourceError("Currency API returned unsuccessful response")

    quoted = data.get("rates") or {}
    canonical_per_base = (quoted.get(canonical) or {}).get("from")
    if not isinstance(canonical_per_base, (int, float)) or canonical_per_base <= 0:
        raise RateSourceError(f"Currency feed has no {canonical} quote")

    rates: Dict[str, float] = {}
    for code, quote in quoted.items():
        per_base = (quote or {}).get("from") if isinstance(quote, dict) else None
        if isinstance(per_base, (int, float)) and per_base > 0:
            rates[code.upper()] = canonical_per_base / per_base

    base = data.get("base")
    if base and base.upper() not in rates:
        rates[base.upper()] = float(canonical_per_base)

    as_of = None
    if data.get("last_update"):
        try:
            as_of = datetime.fromisoformat(str(data["last_update"]).replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Unparseable rate feed timestamp", last_update=data["last_update"])

    logger.info("Fetched exchange rates", base=base, currencies=len(rates))
    return rates, as_of


def fetch_indexed_unit_rate(url: str = DEFAULT_INDEXED_UNIT_URL, timeout: int = REQUEST_TIMEOUT_SECONDS) -> float:
    """
    Fetch the indexed unit (UI) rate in canonical units.

    Raises:
        RateSourceError: If the feed is unreachable or malformed
    """
    logger.info("Fetching indexed unit rate", url=url)
    data = _get_json(url, timeout)

    buy = data.get("buy")
    if data.get("code") != "UI" or not isinstance(buy, (int, float)) or buy <= 0:
        raise RateSourceError("Invalid indexed unit API response format")

    logger.info("Fetched indexed unit rate", rate=buy, date=data.get("date"))
    return float(buy)


def build_rate_table(currency_config: Optional[Dict[str, Any]] = None, max_retries: int = 3) -> RateTable:
    """
    Assemble the run's rate table.

    Live rates win; configured fallbacks fill currencies the feed lacks or
    replace a feed that could not be reached. Currencies with neither stay
    absent so their amounts are excluded from canonical totals.
    """
    cfg = currency_config or {}
    canonical = cfg.get("canonical", CANONICAL_CURRENCY)
    timeout = cfg.get("request_timeout_seconds", REQUEST_TIMEOUT_SECONDS)
    fallback_rates = {code.upper(): float(rate) for code, rate in (cfg.get("fallback_rates") or FALLBACK_RATES).items()}

    rates: Dict[str, float] = dict(fallback_rates)
    as_of = None
    try:
        live_rates, as_of = retry_with_exponential_backoff(
            fetch_currency_rates,
            max_retries,
            1,
            8,
            cfg.get("rates_url", DEFAULT_RATES_URL),
            canonical,
            timeout
        )
        rates.update(live_rates)
    except AnalyticsPipelineError as e:
        rate_source_fallbacks.labels(source="currency").inc()
        logger.warning(f"Using fallback currency rates: {e}")

    try:
        indexed_rate = retry_with_exponential_backoff(
            fetch_indexed_unit_rate,
            max_retries,
            1,
            8,
            cfg.get("indexed_unit_url", DEFAULT_INDEXED_UNIT_URL),
            timeout
        )
    except AnalyticsPipelineError as e:
        rate_source_fallbacks.labels(source="indexed_unit").inc()
        indexed_rate = cfg.get("fallback_indexed_unit_rate", FALLBACK_INDEXED_UNIT_RATE)
        logger.warning(f"Using fallback indexed unit rate: {e}", rate=indexed_rate)

    aliases = tuple(cfg.get("canonical_aliases", CANONICAL_ALIASES))
    for alias in aliases:
        rates.pop(alias, None)

    return RateTable(
        canonical_currency=canonical,
        canonical_aliases=aliases,
        indexed_unit_codes=tuple(cfg.get("indexed_unit_codes", INDEXED_UNIT_CODES)),
        rates=rates,
        indexed_unit_rate=indexed_rate,
        as_of=as_of or datetime.now(),
    )
