"""
shared/utils/categories.py
Fixed category → sub-category table used to validate listings.
"""

from shared.models.models import ListingCategory

CAR_BRANDS = [
    "Toyota", "Honda", "Nissan", "Ford", "Chevrolet", "BMW", "Mercedes",
    "Audi", "Volkswagen", "Hyundai", "Kia", "Mazda", "Mitsubishi", "Lexus",
    "Infiniti", "Land Rover", "Jeep", "Dodge", "GMC", "Porsche", "Ferrari",
    "Lamborghini",
]

SUBCATEGORIES: dict[ListingCategory, list[str]] = {
    ListingCategory.SPARE_PARTS: CAR_BRANDS + [
        "Turbos & Superchargers", "Tires", "Brakes", "Suspension", "Exhaust",
        "Engine Parts", "Transmission", "Electrical", "Body Parts", "Interior",
        "Lights", "Other",
    ],
    ListingCategory.AUTOMOTIVE: CAR_BRANDS + ["Offroad", "Motorcycles", "Other"],
}


def is_valid_subcategory(category: str, sub_category: str) -> bool:
    try:
        cat = ListingCategory(category)
    except ValueError:
        return False
    return sub_category in SUBCATEGORIES[cat]


def category_table() -> list[dict]:
    return [
        {"category": cat.value, "sub_categories": subs}
        for cat, subs in SUBCATEGORIES.items()
    ]
