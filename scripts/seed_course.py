"""
Insert or update a course row so it can be sold.

The course catalog is owned by the content platform; this copies one course's
billing fields into the local table and, with --sync, provisions its Stripe
product and price.

Usage:
    python scripts/seed_course.py c1 "Intro to Pottery" 4900
    python scripts/seed_course.py c2 "Pottery Club" 999 --interval month --sync
"""
import argparse

from sqlmodel import Session

from coursepay.core.config import settings
from coursepay.db import create_db_and_tables, engine
from coursepay.models import Course
from coursepay.services.catalog import CatalogService
from coursepay.services.stripe_gateway import get_stripe_gateway


def main():
    parser = argparse.ArgumentParser(description="Seed a course for billing")
    parser.add_argument("course_id")
    parser.add_argument("title")
    parser.add_argument("price_cents", type=int)
    parser.add_argument("--currency", default=None)
    parser.add_argument("--interval", choices=["month", "year"], default=None)
    parser.add_argument("--sync", action="store_true", help="create the Stripe product and price")
    args = parser.parse_args()

    create_db_and_tables()

    with Session(engine) as session:
        course = session.get(Course, args.course_id) or Course(id=args.course_id)
        course.title = args.title
        course.price_cents = args.price_cents
        course.currency = args.currency
        course.billing_interval = args.interval
        session.add(course)
        session.commit()
        print(f"Course {course.id} saved ({course.price_cents} {course.currency or settings.DEFAULT_CURRENCY})")

        if args.sync:
            result = CatalogService(settings, session, get_stripe_gateway(settings)).sync_course_price(course.id)
            state = "created" if result.created else "already present"
            print(f"Stripe price {result.stripe_price_id} {state}")


if __name__ == "__main__":
    main()
