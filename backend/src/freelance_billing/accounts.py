from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .clock import coerce_utc
from .errors import ClientNotFoundError, DuplicateUserError, UserNotFoundError
from .models import ClientCreateRequest, ClientRecord, UserCreateRequest, UserRecord
from .tables import ClientRow, UserRow

logger = logging.getLogger(__name__)


def to_user_record(row: UserRow) -> UserRecord:
    return UserRecord(
        id=row.id,
        full_name=row.full_name,
        email=row.email,
        phone=row.phone,
        currency=row.currency,
        created_at=coerce_utc(row.created_at),
    )


def to_client_record(row: ClientRow) -> ClientRecord:
    return ClientRecord(
        id=row.id,
        user_id=row.user_id,
        full_name=row.full_name,
        organization=row.organization,
        email=row.email,
        mobile_number=row.mobile_number,
        created_at=coerce_utc(row.created_at),
    )


class AccountService:
    """Users and the clients they bill."""

    def __init__(self, session: Session, *, default_currency: str = "INR") -> None:
        self._session = session
        self._default_currency = default_currency

    def create_user(self, request: UserCreateRequest) -> UserRecord:
        existing = self._session.scalars(select(UserRow).where(UserRow.email == request.email)).first()
        if existing is not None:
            raise DuplicateUserError(f"user already exists: {request.email}")
        row = UserRow(
            full_name=request.full_name.strip(),
            email=request.email,
            phone=request.phone,
            currency=(request.currency or self._default_currency).upper(),
        )
        self._session.add(row)
        try:
            self._session.flush()
        except IntegrityError as exc:
            raise DuplicateUserError(f"user already exists: {request.email}") from exc
        logger.info("created user %s", row.id)
        return to_user_record(row)

    def get_user_row(self, user_id: int) -> UserRow:
        row = self._session.get(UserRow, user_id)
        if row is None:
            raise UserNotFoundError(user_id)
        return row

    def get_user(self, user_id: int) -> UserRecord:
        return to_user_record(self.get_user_row(user_id))

    def create_client(self, user_id: int, request: ClientCreateRequest) -> ClientRecord:
        self.get_user_row(user_id)
        row = ClientRow(
            user_id=user_id,
            full_name=request.full_name.strip(),
            organization=request.organization,
            email=request.email,
            mobile_number=request.mobile_number,
        )
        self._session.add(row)
        self._session.flush()
        return to_client_record(row)

    def get_client_row(self, client_id: int, user_id: int) -> ClientRow:
        row = self._session.get(ClientRow, client_id)
        if row is None or row.user_id != user_id:
            raise ClientNotFoundError(client_id)
        return row

    def list_clients(self, user_id: int) -> list[ClientRecord]:
        rows = self._session.scalars(
            select(ClientRow).where(ClientRow.user_id == user_id).order_by(ClientRow.id.asc())
        ).all()
        return [to_client_record(row) for row in rows]
