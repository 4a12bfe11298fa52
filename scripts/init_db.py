"""
Initialize PostgreSQL database schema
Creates all tables defined in models and seeds the candle catalogue
"""
import sys
import os
import argparse

# Add parent directory to path to import backend modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.database import Database
from models.product import Product

SEED_PRODUCTS = [
    {
        "title": "Dragon",
        "description": "Majestic dragon-shaped beeswax candle, hand-crafted with intricate details",
        "price": 1500,
        "image": "dragon.jpg",
        "stock_quantity": 15,
    },
    {
        "title": "Corn Cob",
        "description": "Rustic corn cob candle made from pure beeswax, perfect for country decor",
        "price": 1600,
        "image": "corn-cob.jpg",
        "stock_quantity": 12,
    },
    {
        "title": "Bee and Flower",
        "description": "Delicate bee and flower design, symbolizing nature's harmony",
        "price": 850,
        "image": "bee-and-flower.jpg",
        "stock_quantity": 18,
    },
    {
        "title": "Rose",
        "description": "Elegant rose-shaped candle with natural beeswax fragrance",
        "price": 800,
        "image": "rose.jpg",
        "stock_quantity": 20,
    },
]


def seed_products(database: Database) -> int:
    """Insert seed products whose title is not present yet. Returns count inserted."""
    inserted = 0
    with database.transaction() as db:
        existing = {title for (title,) in db.query(Product.title).all()}
        for data in SEED_PRODUCTS:
            if data["title"] in existing:
                continue
            db.add(Product(category="candles", is_active=True, **data))
            inserted += 1
    return inserted


def init_database(seed: bool = False):
    """Create all tables in the database"""
    print("Creating PostgreSQL tables...")

    try:
        database = Database.from_env()
        database.init_db()
        print("✓ Tables created successfully!")
        print("\nCreated tables:")
        print("  - products")
        print("  - customers")
        print("  - orders")
        print("  - order_items")
        if seed:
            count = seed_products(database)
            print(f"✓ Seeded {count} products")
    except Exception as e:
        print(f"✗ Error creating tables: {e}")
        sys.exit(1)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create order tables")
    parser.add_argument("--seed", action="store_true", help="insert the candle catalogue")
    args = parser.parse_args()
    init_database(seed=args.seed)
