from collections.abc import Generator

from .session import SessionLocalCustody


def get_custody_db() -> Generator:
    db = SessionLocalCustody()
    try:
        yield db
    finally:
        db.close()
