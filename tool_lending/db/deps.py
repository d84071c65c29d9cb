from collections.abc import Generator

from fastapi import Request

from tool_lending.db.session import Storage


def get_storage(request: Request) -> Storage:
    return request.app.state.storage


def get_db(request: Request) -> Generator:
    db = get_storage(request).session()
    try:
        yield db
    finally:
        db.close()
