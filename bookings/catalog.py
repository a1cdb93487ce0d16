"""
Package and add-on catalog with deposit pricing.

Each package declares its own deposit policy: the DJ packages sold through
the booking form take half of the quoted total, the plug-and-play packages
sold through direct checkout take a fixed deposit.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, NamedTuple, Optional


DEPOSIT_RATIO = Decimal('0.5')


class Package(NamedTuple):
    key: str
    name: str
    base_price: int
    fixed_deposit: Optional[int] = None
    description: str = ''

    @property
    def deposit_policy(self) -> str:
        return 'fixed' if self.fixed_deposit is not None else 'percent'


class Quote(NamedTuple):
    package: Package
    add_ons: List[str]
    total_amount: int
    deposit_amount: int

    @property
    def add_on_summary(self) -> str:
        return ', '.join(self.add_ons) if self.add_ons else 'None'


PACKAGES = {
    'essentialVibe': Package('essentialVibe', 'Essential Vibe', 495),
    'premiumExperience': Package('premiumExperience', 'Premium Experience', 695),
    'vzPartyStarter': Package('vzPartyStarter', 'VZ Party Starter', 1095),
    'ultimateExperience': Package('ultimateExperience', 'Ultimate Entertainment Experience', 1495),
    'option1': Package(
        'option1', 'Plug-and-Play', 400, fixed_deposit=100,
        description='Essential DJ setup - bring your vibe, we bring the sound',
    ),
    'option2': Package(
        'option2', 'Full Setup + Rentals Fees', 550, fixed_deposit=150,
        description='Complete setup of DJ area, sound system (PA), including rental equipment',
    ),
}

ADD_ON_PRICING = {
    'Basic Lighting Package': 125,
    'Premium Lighting Upgrade': 275,
    'Large Venue (200-300+ guests)': 200,
    'Extra Hour': 125,
}


def get_package(key) -> Optional[Package]:
    if not isinstance(key, str):
        return None
    return PACKAGES.get(key)


def sanitize_add_ons(selected) -> List[str]:
    """Keep known add-on names in submission order; unknown names are dropped."""
    if not isinstance(selected, (list, tuple)):
        return []
    kept = []
    for name in selected:
        if isinstance(name, str) and name in ADD_ON_PRICING and name not in kept:
            kept.append(name)
    return kept


def add_on_price(name: str) -> int:
    return ADD_ON_PRICING.get(name, 0)


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def deposit_for(package: Package, total_amount: int) -> int:
    if package.fixed_deposit is not None:
        return min(package.fixed_deposit, total_amount)
    return round_half_up(Decimal(total_amount) * DEPOSIT_RATIO)


def quote(package: Package, selected_add_ons: Iterable[str] = ()) -> Quote:
    add_ons = sanitize_add_ons(list(selected_add_ons))
    total = package.base_price + sum(add_on_price(name) for name in add_ons)
    return Quote(
        package=package,
        add_ons=add_ons,
        total_amount=total,
        deposit_amount=deposit_for(package, total),
    )
