"""
Sample data for development databases.

Generates a catalog and a set of users with Faker, then runs some real
borrows and reservations through ``CirculationRepository`` so the seeded
state obeys every lending invariant. Seeded with a fixed value so reruns
on an empty database produce the same data.
"""

import logging
import random
import re
from datetime import timedelta

from faker import Faker
from sqlalchemy.orm import Session

from ..models.user import Role
from ..policy import Actor
from .book_repository import BookCreateSchema, BookRepository
from .circulation_repository import CirculationRepository
from .repository import RepositoryException
from .user_repository import UserCreateSchema, UserRepository

logger = logging.getLogger(__name__)

GENRES = [
    "Fiction",
    "Mystery",
    "Science Fiction",
    "Fantasy",
    "Biography",
    "History",
    "Science",
    "Poetry",
]


def generate_isbn13(rng: random.Random) -> str:
    """Generate a valid ISBN-13 number."""
    digits = f"978{rng.randint(0, 9)}{rng.randint(1000, 9999)}{rng.randint(1000, 9999)}"
    total = sum(int(d) * (3 if i % 2 else 1) for i, d in enumerate(digits))
    return f"{digits}{(10 - total % 10) % 10}"


def seed_database(
    session: Session, num_books: int = 40, num_patrons: int = 15, seed: int = 42
) -> dict[str, int]:
    """
    Fill an empty database with sample books, users, loans and reservations.

    Returns:
        Counts of what was created
    """
    fake = Faker()
    Faker.seed(seed)
    rng = random.Random(seed)

    books = BookRepository(session)
    users = UserRepository(session)

    book_ids = []
    for _ in range(num_books):
        book = books.create(
            BookCreateSchema(
                isbn=generate_isbn13(rng),
                title=fake.catch_phrase().title(),
                author=fake.name(),
                genre=rng.choice(GENRES),
                publication_date=fake.date_between(start_date="-60y", end_date="-1y"),
                description=fake.text(max_nb_chars=300),
                total_copies=rng.randint(1, 4),
            )
        )
        book_ids.append(book.id)

    librarian = users.create(
        UserCreateSchema(
            username="librarian",
            email="librarian@library.org",
            full_name=fake.name(),
            role=Role.LIBRARIAN,
        )
    )

    patron_ids = []
    for i in range(num_patrons):
        patron = users.create(
            UserCreateSchema(
                username=re.sub(r"[^a-z0-9_.-]", "", fake.user_name().lower()) + str(i),
                email=f"patron{i}@library.org",
                full_name=fake.name(),
            )
        )
        patron_ids.append(patron.id)

    circulation = CirculationRepository(session)
    loans = reservations = 0
    for patron_id in patron_ids:
        for book_id in rng.sample(book_ids, k=min(3, len(book_ids))):
            actor = Actor.patron(patron_id)
            try:
                circulation.borrow_book(
                    book_id,
                    patron_id,
                    circulation.loans.today() + timedelta(days=rng.randint(7, 21)),
                    actor=actor,
                )
                loans += 1
            except RepositoryException:
                # No copy left: wait for one instead
                try:
                    circulation.reserve_book(book_id, patron_id, actor=actor)
                    reservations += 1
                except RepositoryException as e:
                    logger.debug("Skipping reservation for user %d: %s", patron_id, e)

    counts = {
        "books": len(book_ids),
        "users": len(patron_ids) + 1,
        "loans": loans,
        "reservations": reservations,
    }
    logger.info("Seeded database (librarian id %d): %s", librarian.id, counts)
    return counts
