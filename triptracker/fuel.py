from typing import Dict

CURRENCY_SYMBOLS: Dict[str, str] = {
    "USD": "$",
    "EUR": "€",
    "UAH": "₴",
    "GBP": "£",
    "RUB": "₽",
    "PLN": "zł",
    "JPY": "¥",
    "CNY": "¥",
}


def fuel_used(distance_m: float, consumption_l_per_100km: float) -> float:
    """Liters burned over distance_m at the given L/100km rate. Non-positive distance uses nothing."""
    if distance_m <= 0:
        return 0.0
    distance_km = distance_m / 1000
    return (distance_km / 100) * consumption_l_per_100km


def fuel_cost(distance_m: float, consumption_l_per_100km: float, price_per_liter: float) -> float:
    """Cost of the fuel burned over distance_m."""
    return fuel_used(distance_m, consumption_l_per_100km) * price_per_liter


def currency_symbol(currency_code: str) -> str:
    """Symbol for a currency code, falling back to the code itself."""
    return CURRENCY_SYMBOLS.get(currency_code, currency_code)


def format_price(amount: float, currency_code: str) -> str:
    return f"{currency_symbol(currency_code)} {amount:.2f}"
