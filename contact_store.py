import sqlite3
from typing import List, Optional

from db_models import Contact, LinkPrecedence
from db_setup import utc_now_iso
from errors import NotFoundError

_UPDATABLE_FIELDS = ("email", "phoneNumber", "linkedId", "linkPrecedence")


class ContactStore:
    """Contact table queries and commands bound to one connection.

    Every read skips soft-deleted rows. The store never opens or commits a
    transaction itself; callers wrap a unit of work in ``db_setup.transaction``.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def _fetch(self, query: str, params) -> List[Contact]:
        cursor = self.conn.execute(query, params)
        return [Contact(**dict(row)) for row in cursor.fetchall()]

    def find_by_email(self, email: str) -> List[Contact]:
        return self._fetch("""
            SELECT * FROM Contact
            WHERE email = ? AND deletedAt IS NULL
            ORDER BY createdAt ASC, id ASC
        """, (email,))

    def find_by_phone(self, phone: str) -> List[Contact]:
        return self._fetch("""
            SELECT * FROM Contact
            WHERE phoneNumber = ? AND deletedAt IS NULL
            ORDER BY createdAt ASC, id ASC
        """, (phone,))

    def find_by_id_or_linked_id(self, contact_id: int) -> List[Contact]:
        return self._fetch("""
            SELECT * FROM Contact
            WHERE (id = ? OR linkedId = ?) AND deletedAt IS NULL
            ORDER BY createdAt ASC, id ASC
        """, (contact_id, contact_id))

    def find_by_id(self, contact_id: int) -> Optional[Contact]:
        contacts = self._fetch(
            "SELECT * FROM Contact WHERE id = ? AND deletedAt IS NULL", (contact_id,)
        )
        return contacts[0] if contacts else None

    def create(
        self,
        email: Optional[str] = None,
        phone_number: Optional[str] = None,
        link_precedence: LinkPrecedence = LinkPrecedence.PRIMARY,
        linked_id: Optional[int] = None,
    ) -> Contact:
        now = utc_now_iso()
        cursor = self.conn.execute("""
            INSERT INTO Contact (phoneNumber, email, linkedId, linkPrecedence, createdAt, updatedAt)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (phone_number, email, linked_id, LinkPrecedence(link_precedence).value, now, now))
        return self.find_by_id(cursor.lastrowid)

    def update(self, contact_id: int, **fields) -> Contact:
        unknown = set(fields) - set(_UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update contact fields: {sorted(unknown)}")
        if "linkPrecedence" in fields:
            fields["linkPrecedence"] = LinkPrecedence(fields["linkPrecedence"]).value

        assignments = ", ".join(f"{name} = ?" for name in fields)
        params = list(fields.values()) + [utc_now_iso(), contact_id]
        cursor = self.conn.execute(f"""
            UPDATE Contact
            SET {assignments}{', ' if assignments else ''}updatedAt = ?
            WHERE id = ? AND deletedAt IS NULL
        """, params)

        if cursor.rowcount == 0:
            raise NotFoundError(f"Contact {contact_id} no longer exists")
        return self.find_by_id(contact_id)
