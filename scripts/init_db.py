from coursepay.core.config import settings
from coursepay.db import create_db_and_tables

if __name__ == "__main__":
    print(f"Creating tables in {settings.DATABASE_URL.split('@')[-1]}...")
    create_db_and_tables()
    print("Tables created successfully!")
