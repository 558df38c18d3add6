"""
Hydration & consumption calculator.

Turns (container size, percentage-or-duration, servings, liquid type) into the
final ounce value credited to the user. Pure functions, no I/O.
"""

import enum
import math
from dataclasses import dataclass
from typing import Optional, Union

from ..errors import ZeroHydrationError

MIN_OUNCES = 0.5
MAX_OUNCES = 128.0
DEFAULT_CAPACITY = 16.0

# --- Data Tables ---

# Sip size -> ounces per second of drinking
SIP_RATES = {
    "small": 0.4,
    "medium": 0.6,
    "large": 0.85,
}


class LiquidCategory(str, enum.Enum):
    WATER = "water"
    DIET_SODA = "diet_soda"
    SODA = "soda"
    SPORTS_DRINK = "sports_drink"
    ENERGY_DRINK = "energy_drink"
    COFFEE_TEA = "coffee_tea"
    MILK = "milk"
    JUICE = "juice"
    SMOOTHIE = "smoothie"
    ALCOHOL = "alcohol"
    OTHER = "other"


MULTIPLIERS = {
    LiquidCategory.WATER: 1.0,
    LiquidCategory.DIET_SODA: 0.9,
    LiquidCategory.SODA: 0.75,
    LiquidCategory.SPORTS_DRINK: 0.7,
    LiquidCategory.ENERGY_DRINK: 0.65,
    LiquidCategory.COFFEE_TEA: 0.8,
    LiquidCategory.MILK: 0.75,
    LiquidCategory.JUICE: 0.7,
    LiquidCategory.SMOOTHIE: 0.65,
    LiquidCategory.ALCOHOL: 0.0,
    LiquidCategory.OTHER: 1.0,
}

# Keyword -> category. The longest keyword found in the description wins,
# so "diet soda" beats "soda" and "root beer" beats "beer".
KEYWORDS = [
    ("water", LiquidCategory.WATER),
    ("sparkling", LiquidCategory.WATER),
    ("seltzer", LiquidCategory.WATER),
    ("diet soda", LiquidCategory.DIET_SODA),
    ("diet coke", LiquidCategory.DIET_SODA),
    ("diet pepsi", LiquidCategory.DIET_SODA),
    ("coke zero", LiquidCategory.DIET_SODA),
    ("pepsi zero", LiquidCategory.DIET_SODA),
    ("zero soda", LiquidCategory.DIET_SODA),
    ("soda", LiquidCategory.SODA),
    ("coke", LiquidCategory.SODA),
    ("pepsi", LiquidCategory.SODA),
    ("cola", LiquidCategory.SODA),
    ("root beer", LiquidCategory.SODA),
    ("ginger beer", LiquidCategory.SODA),
    ("sports drink", LiquidCategory.SPORTS_DRINK),
    ("gatorade", LiquidCategory.SPORTS_DRINK),
    ("powerade", LiquidCategory.SPORTS_DRINK),
    ("energy drink", LiquidCategory.ENERGY_DRINK),
    ("energy", LiquidCategory.ENERGY_DRINK),
    ("red bull", LiquidCategory.ENERGY_DRINK),
    ("coffee", LiquidCategory.COFFEE_TEA),
    ("espresso", LiquidCategory.COFFEE_TEA),
    ("latte", LiquidCategory.COFFEE_TEA),
    ("tea", LiquidCategory.COFFEE_TEA),
    ("milk", LiquidCategory.MILK),
    ("dairy", LiquidCategory.MILK),
    ("juice", LiquidCategory.JUICE),
    ("watermelon", LiquidCategory.JUICE),
    ("smoothie", LiquidCategory.SMOOTHIE),
    ("protein", LiquidCategory.SMOOTHIE),
    ("beer", LiquidCategory.ALCOHOL),
    ("wine", LiquidCategory.ALCOHOL),
    ("alcohol", LiquidCategory.ALCOHOL),
    ("liquor", LiquidCategory.ALCOHOL),
    ("cocktail", LiquidCategory.ALCOHOL),
]


@dataclass
class Consumption:
    consumed_ounces: float
    multiplier: float
    adjusted_ounces: float
    ounces: float
    liquid_type: str
    category: LiquidCategory


def ounces_per_second(sip_size: Optional[str]) -> float:
    return SIP_RATES.get((sip_size or "").lower().strip(), SIP_RATES["medium"])


def parse_seconds(duration: Union[int, float, str]) -> float:
    """Accepts 5, 5.0 or "5 seconds"."""
    if isinstance(duration, (int, float)):
        return float(duration)
    token = str(duration).strip().split(" ")[0]
    try:
        return float(token)
    except ValueError:
        raise ValueError(f"Unparseable duration: {duration!r}")


def duration_consumption(duration: Union[int, float, str], sip_size: Optional[str]) -> float:
    return parse_seconds(duration) * ounces_per_second(sip_size)


def percentage_consumption(capacity: float, percentage: float) -> float:
    return capacity * percentage / 100


def classify_liquid(liquid_type: Optional[str]) -> LiquidCategory:
    if not liquid_type:
        return LiquidCategory.OTHER
    text = liquid_type.lower().strip()

    best = None
    for keyword, category in KEYWORDS:
        if keyword in text and (best is None or len(keyword) > len(best[0])):
            best = (keyword, category)

    return best[1] if best else LiquidCategory.OTHER


def hydration_multiplier(liquid_type: Optional[str]) -> float:
    return MULTIPLIERS[classify_liquid(liquid_type)]


def smart_round(value: float) -> float:
    """Snap to the nearest 0.5 or 1.0 using the 3/4 and 1/4 thresholds."""
    whole = math.floor(value)
    # Rounded so float noise (2.25 stored as 2.2499999) does not flip a threshold
    remainder = round(value - whole, 6)

    if remainder >= 0.75:
        return float(whole + 1)
    if remainder >= 0.25:
        return whole + 0.5
    return float(whole)


def clamp_ounces(value: float) -> float:
    return max(MIN_OUNCES, min(value, MAX_OUNCES))


def normalize_capacity(value) -> float:
    """Provider capacities outside 1-128 oz (or unparseable) fall back to 16 oz."""
    try:
        capacity = float(value)
    except (TypeError, ValueError):
        return DEFAULT_CAPACITY
    if math.isnan(capacity) or capacity < 1 or capacity > MAX_OUNCES:
        return DEFAULT_CAPACITY
    return round(capacity * 2) / 2


def calculate_consumption(
    capacity: float,
    *,
    percentage: Optional[float] = None,
    duration: Optional[Union[int, float, str]] = None,
    sip_size: Optional[str] = "medium",
    servings: Optional[float] = 1,
    liquid_type: Optional[str] = None,
) -> Consumption:
    """Final ounces for one drink.

    Duration wins over percentage; with neither, the whole container counts.
    Raises ZeroHydrationError for alcohol before anything else is computed.
    """
    liquid = liquid_type or "water"
    category = classify_liquid(liquid)
    multiplier = MULTIPLIERS[category]
    if multiplier == 0.0:
        raise ZeroHydrationError(f"{liquid} contributes 0 oz of hydration")

    if duration:
        consumed = duration_consumption(duration, sip_size)
    elif percentage is not None:
        consumed = percentage_consumption(capacity, percentage)
    else:
        consumed = capacity

    adjusted = consumed * (servings or 1) * multiplier
    final = clamp_ounces(smart_round(adjusted))

    return Consumption(
        consumed_ounces=consumed,
        multiplier=multiplier,
        adjusted_ounces=adjusted,
        ounces=final,
        liquid_type=liquid,
        category=category,
    )
