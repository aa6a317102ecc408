"""
Rental checkout and return.

Checkout takes one copy of a movie out of stock and records the rental in a
single transaction. Return closes a rental by stamping the return date and
the fee together. Business-rule failures are raised before anything is
written. Concurrent writers that keep colliding surface as `Conflict`; any
other failed commit surfaces as `WorkflowAborted`.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict

from bson import ObjectId

from database import RecordStore, StoreError, TransientConflict, WriteConflict
from errors import AlreadyReturned, Conflict, InvalidReference, NotFound, OutOfStock, WorkflowAborted
from schemas import CustomerSnapshot, MovieSnapshot, Rental

logger = logging.getLogger("video_rentals.rentals")

ONE_DAY = timedelta(days=1)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    # Stores without tz support hand back naive UTC datetimes
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def rental_days(date_out: datetime, now: datetime) -> int:
    """Whole days billed between `date_out` and `now`; a started day counts in full."""
    elapsed = _aware(now) - _aware(date_out)
    if elapsed <= timedelta(0):
        return 0
    return -(-elapsed // ONE_DAY)


def rental_fee(date_out: datetime, daily_rental_rate: float, now: datetime) -> float:
    return rental_days(date_out, now) * daily_rental_rate


def parse_reference(value: Any, what: str) -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not isinstance(value, str) or not ObjectId.is_valid(value):
        raise InvalidReference(f"Invalid {what}.")
    return ObjectId(value)


def checkout(store: RecordStore, customer_id: Any, movie_id: Any, now: Clock = utcnow) -> Dict[str, Any]:
    customer_oid = parse_reference(customer_id, "customer")
    movie_oid = parse_reference(movie_id, "movie")

    customer = store.find_one("customers", {"_id": customer_oid})
    if not customer:
        raise NotFound("Invalid customer.")

    movie = store.find_one("movies", {"_id": movie_oid})
    if not movie:
        raise NotFound("Invalid movie.")

    if movie.get("numberInStock", 0) < 1:
        raise OutOfStock()

    rental = Rental(
        customer=CustomerSnapshot.of(customer),
        movie=MovieSnapshot.of(movie),
        dateOut=now(),
    ).to_document()

    try:
        with store.transaction() as tx:
            # Only applies while a copy is still on the shelf at commit time
            tx.update("movies", {"_id": movie_oid, "numberInStock": {"$gte": 1}},
                      {"$inc": {"numberInStock": -1}})
            rental = tx.insert("rentals", rental)
    except WriteConflict:
        raise OutOfStock()
    except TransientConflict:
        raise Conflict()
    except StoreError as exc:
        raise WorkflowAborted(f"Checkout of movie {movie_oid} for customer {customer_oid} failed") from exc

    logger.info("Rental %s created: movie %s, customer %s", rental["_id"], movie_oid, customer_oid)
    return rental


def return_rental(store: RecordStore, rental_id: Any, now: Clock = utcnow) -> Dict[str, Any]:
    rental_oid = parse_reference(rental_id, "rental")

    rental = store.find_one("rentals", {"_id": rental_oid})
    if not rental:
        raise NotFound("The rental with the given ID was not found.")

    if rental.get("dateReturned") is not None:
        raise AlreadyReturned()

    returned = now()
    fee = rental_fee(rental["dateOut"], rental["movie"]["dailyRentalRate"], returned)

    # Stock is not put back on return.
    try:
        with store.transaction() as tx:
            tx.update("rentals", {"_id": rental_oid, "dateReturned": None},
                      {"$set": {"dateReturned": returned, "rentalFee": fee}})
    except WriteConflict:
        raise AlreadyReturned()
    except TransientConflict:
        raise Conflict()
    except StoreError as exc:
        raise WorkflowAborted(f"Return of rental {rental_oid} failed") from exc

    rental.update(dateReturned=returned, rentalFee=fee)
    logger.info("Rental %s returned, fee %s", rental_oid, fee)
    return rental
