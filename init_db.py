import os
import sys

import psycopg
from dotenv import load_dotenv


def main():
    # Load environment variables from .env
    load_dotenv()

    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        print("Error: DATABASE_URL is not set in the environment.")
        return 1

    schema_path = os.path.join(os.path.dirname(__file__), "db", "schema.sql")
    with open(schema_path, "r", encoding="utf-8") as f:
        sql = f.read()

    try:
        with psycopg.connect(database_url) as conn:
            with conn.cursor() as cur:
                # no parameters, so the server accepts the whole multi-statement script
                cur.execute(sql)
            conn.commit()
    except psycopg.Error as e:
        print(f"Error initializing database: {e}")
        return 1

    print("Database initialized successfully!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
