from decimal import Decimal

from sqlalchemy import select

from .models import Product, ProductCategory, StrainType, Vendor

VENDORS = [
    {"name": "Green Valley Farms", "email": "contact@greenvalley.com"},
    {"name": "Mountain High Cannabis", "email": "orders@mountainhigh.com"},
]

# (vendor index, name, category, strain, price, thc, cbd, stock, description)
PRODUCTS = [
    (0, "Blue Dream", ProductCategory.FLOWER, StrainType.HYBRID, "250.00", "18.5", "0.5", 50,
     "A balanced hybrid with a sweet berry aroma. Suited to day and evening use."),
    (0, "White Widow", ProductCategory.FLOWER, StrainType.INDICA, "480.00", "22.0", "1.0", 30,
     "Indica-dominant classic with a white crystalline coat."),
    (1, "Sour Haze", ProductCategory.FLOWER, StrainType.SATIVA, "180.00", "20.5", "0.3", 75,
     "Energising sativa with citrus notes."),
    (0, "Strawberry Gummies", ProductCategory.EDIBLES, None, "120.00", "10.0", "2.0", 100,
     "Fruit gummies, 10 per pack."),
    (1, "Dark Chocolate Bar", ProductCategory.EDIBLES, None, "200.00", "25.0", "5.0", 40,
     "Dark chocolate in portioned squares."),
    (1, "Live Resin Wax", ProductCategory.CONCENTRATES, StrainType.HYBRID, "600.00", "85.0", "2.0", 15,
     "Full-spectrum live resin concentrate."),
    (0, "Premium Grinder", ProductCategory.ACCESSORIES, None, "350.00", None, None, 25,
     "Four-piece aluminium grinder with pollen catcher."),
    (1, "CBD Relief Oil", ProductCategory.WELLNESS, None, "450.00", "0.3", "15.0", 60,
     "High-CBD tincture for daily wellness."),
]


def _decimal(value):
    return Decimal(value) if value is not None else None


async def seed_initial_data(session):
    result = await session.execute(select(Vendor))
    vendors = {v.name: v for v in result.scalars().all()}

    for data in VENDORS:
        if data["name"] not in vendors:
            vendor = Vendor(**data)
            session.add(vendor)
            vendors[vendor.name] = vendor
    await session.flush()

    # Seed products only into an empty catalog
    existing = await session.execute(select(Product.id).limit(1))
    if existing.first() is None:
        ordered = [vendors[v["name"]] for v in VENDORS]
        session.add_all(
            [
                Product(
                    vendor_id=ordered[vendor_index].id,
                    name=name,
                    description=description,
                    category=category,
                    strain_type=strain,
                    price=Decimal(price),
                    thc_content=_decimal(thc),
                    cbd_content=_decimal(cbd),
                    stock_quantity=stock,
                    in_stock=stock > 0,
                    is_active=True,
                )
                for vendor_index, name, category, strain, price, thc, cbd, stock, description in PRODUCTS
            ]
        )

    await session.commit()
