from .engine import (
    RuleEngine,
    compute_charge,
    find_hold,
    minutes_between,
    round_to_increment,
)

__all__ = [
    "RuleEngine",
    "compute_charge",
    "find_hold",
    "minutes_between",
    "round_to_increment",
]
