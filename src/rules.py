import json
import logging
import math
import os
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional

from models import Category

logger = logging.getLogger(__name__)

DEFAULT_CAPS: Dict[str, int] = {
    Category.FAILED_PAYMENT.value: 40,
    Category.UNBILLED_REVENUE.value: 35,
    Category.DISPUTED_CHARGE.value: 15,
    Category.ZOMBIE_CHARGE.value: 25,
    Category.DUPLICATE_CHARGE.value: 18,
    Category.FEE_DISCREPANCY.value: 50,
    Category.OTHER.value: 50,
}


@dataclass(frozen=True)
class Rules:
    date_window_days: float = 2
    fallback_window_days: float = 1
    fee_discrepancy_threshold_minor: int = 100
    payout_grace_days: float = 4
    timing_mismatch_days: float = 1
    annualization_factor: int = 12
    chargeback_fee_minor: int = 1500
    min_similarity: int = 85           # 0-100 RapidFuzz threshold
    usage_unit_price_minor: int = 5
    currency_code: str = "USD"
    caps: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_CAPS))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# key -> (caster, minimum)
_NUMERIC_KEYS = {
    "date_window_days": (float, 0),
    "fallback_window_days": (float, 0),
    "fee_discrepancy_threshold_minor": (int, 0),
    "payout_grace_days": (float, 0),
    "timing_mismatch_days": (float, 0),
    "annualization_factor": (int, 1),
    "chargeback_fee_minor": (int, 0),
    "min_similarity": (int, 0),
    "usage_unit_price_minor": (int, 0),
}


def _number(key: str, value: Any, default: Any) -> Any:
    caster, minimum = _NUMERIC_KEYS[key]
    if isinstance(value, bool):
        logger.warning("Ignoring boolean value for %s, using default %s", key, default)
        return default
    try:
        num = float(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring invalid value %r for %s, using default %s", value, key, default)
        return default
    if not math.isfinite(num):
        logger.warning("Ignoring non-finite value for %s, using default %s", key, default)
        return default
    return caster(max(minimum, num))


def _caps(value: Any) -> Dict[str, int]:
    caps = dict(DEFAULT_CAPS)
    if not isinstance(value, dict):
        if value is not None:
            logger.warning("Ignoring invalid caps %r, using defaults", value)
        return caps
    known = {c.value for c in Category}
    for name, raw in value.items():
        if name not in known:
            logger.warning("Ignoring cap for unknown category %r", name)
            continue
        try:
            cap = int(raw)
        except (TypeError, ValueError):
            logger.warning("Ignoring invalid cap %r for %s", raw, name)
            continue
        if cap < 0:
            logger.warning("Ignoring negative cap %r for %s", raw, name)
            continue
        caps[name] = cap
    return caps


def resolve_rules(*layers: Optional[Dict[str, Any]]) -> Rules:
    """
    Merge flat config dicts (later layers win) into Rules.
    Unrecognized keys and invalid values fall back to defaults instead of failing.
    """
    merged: Dict[str, Any] = {}
    for layer in layers:
        if not layer:
            continue
        # org configs may nest their values under "settings"
        if isinstance(layer.get("settings"), dict):
            layer = layer["settings"]
        merged.update(layer)

    defaults = Rules()
    values: Dict[str, Any] = {}
    for key, raw in merged.items():
        if key in _NUMERIC_KEYS:
            values[key] = _number(key, raw, getattr(defaults, key))
        elif key == "caps":
            values["caps"] = _caps(raw)
        elif key == "currency_code":
            if isinstance(raw, str) and raw.strip():
                values["currency_code"] = raw.strip().upper()
            else:
                logger.warning("Ignoring invalid currency_code %r", raw)
        else:
            logger.warning("Ignoring unrecognized config option %r", key)

    values["min_similarity"] = min(100, values.get("min_similarity", defaults.min_similarity))
    return Rules(**values)


def load_rules(path: str = "config/recon_config.json", overrides: Optional[Dict[str, Any]] = None) -> Rules:
    raw: Dict[str, Any] = {}
    if path and os.path.exists(path):
        with open(path, "r") as f:
            raw = json.load(f)
    else:
        logger.info("No config file at %s, using defaults", path)
    return resolve_rules(raw, overrides)
