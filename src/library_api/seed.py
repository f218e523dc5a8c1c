"""
Sample data for development databases.

Generates a catalog, a librarian, a handful of members and a circulation
history. The history is produced by driving the borrowing ledger with a
clock that starts in the past, so copy counts and statuses are exactly what
real traffic would have left behind.
"""

import logging
import random
from datetime import timedelta

from faker import Faker

from .auth import Actor
from .clock import FixedClock, SystemClock
from .config import get_config
from .database.book_repository import BookCreateSchema, BookRepository
from .database.session import DatabaseManager
from .database.user_repository import UserCreateSchema, UserRepository
from .errors import AlreadyBorrowed, BookUnavailable
from .ledger import BorrowingLedger
from .models.user import Role

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
    "Romance",
    "Philosophy",
]

SAMPLE_PASSWORD = "password123"
LIBRARIAN_EMAIL = "librarian@library.test"


def generate_isbn13(rng: random.Random) -> str:
    """Generate a valid ISBN-13 number."""
    digits = f"978{rng.randint(0, 9)}{rng.randint(1000, 9999)}{rng.randint(1000, 9999)}"
    total = sum(int(digit) * (3 if i % 2 else 1) for i, digit in enumerate(digits))
    return f"{digits}{(10 - total % 10) % 10}"


def seed_sample_data(
    db: DatabaseManager,
    num_books: int = 40,
    num_members: int = 12,
    num_borrowings: int = 60,
    seed: int = 42,
) -> dict[str, int]:
    """
    Load sample data into an initialized database.

    Returns:
        Counts of what was created
    """
    fake = Faker()
    Faker.seed(seed)
    rng = random.Random(seed)
    now = SystemClock().now()
    config = get_config()

    with db.session_scope() as session:
        users = UserRepository(session)
        librarian = users.create(
            UserCreateSchema(
                email_address=LIBRARIAN_EMAIL,
                password=SAMPLE_PASSWORD,
                first_name="Libby",
                last_name="Rarian",
                role=Role.LIBRARIAN,
            )
        )
        members = [
            users.create(
                UserCreateSchema(
                    email_address=f"member{i + 1}@library.test",
                    password=SAMPLE_PASSWORD,
                    first_name=fake.first_name(),
                    last_name=fake.last_name(),
                )
            )
            for i in range(num_members)
        ]

        books = BookRepository(session)
        book_ids = []
        for _ in range(num_books):
            book = books.create(
                BookCreateSchema(
                    title=fake.catch_phrase().title(),
                    author=fake.name(),
                    isbn=generate_isbn13(rng),
                    description=fake.text(max_nb_chars=300),
                    genre=rng.choice(GENRES),
                    publication_year=rng.randint(1900, now.year),
                    publisher=fake.company(),
                    total_copies=rng.randint(1, 5),
                )
            )
            book_ids.append(book.id)

    # Replay a circulation history starting 60 days ago
    clock = FixedClock(now - timedelta(days=60))
    ledger = BorrowingLedger(db, clock, config)
    staff = Actor.from_user(librarian)
    readers = [Actor.from_user(member) for member in members]
    active = []
    created = 0

    for _ in range(num_borrowings):
        clock.advance(hours=rng.randint(1, 20))
        if clock.now() >= now:
            break

        if active and rng.random() < 0.45:
            borrowing_id = active.pop(rng.randrange(len(active)))
            ledger.return_borrowing(staff, borrowing_id)
            continue

        try:
            borrowing = ledger.borrow(rng.choice(readers), rng.choice(book_ids))
        except (AlreadyBorrowed, BookUnavailable):
            continue
        active.append(borrowing.id)
        created += 1

    ledger.clock = SystemClock()
    flagged = ledger.sweep_overdue()

    logger.info(
        "Seeded %d books, %d members, %d borrowings (%d overdue)",
        num_books,
        num_members,
        created,
        flagged,
    )
    return {
        "books": num_books,
        "members": num_members,
        "librarians": 1,
        "borrowings": created,
        "overdue": flagged,
    }
