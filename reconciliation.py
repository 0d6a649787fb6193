"""Identity resolution and cluster consolidation.

A cluster is every contact connected by a shared email or phone number. It
is stored as a star: one primary row, with each secondary row's ``linkedId``
pointing straight at it. ``identify`` folds a submitted fragment into that
structure inside a single write-locked transaction:

    resolve_cluster -> consolidate (2+ primaries) -> admit_contact -> project_response
"""

import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

import structlog

from config import Settings
from contact_store import ContactStore
from db_models import Contact, ContactResponse, FinalResponse, LinkPrecedence
from db_setup import get_db_connection, transaction
from errors import ReconciliationError, StoreIntegrityError, ValidationError

logger = structlog.get_logger()


@dataclass
class ResolvedCluster:
    """Contacts matched by a fragment and the distinct primaries they belong to."""

    matches: List[Contact] = field(default_factory=list)
    primaries: List[Contact] = field(default_factory=list)


def canonical_order(contacts: Iterable[Contact]) -> List[Contact]:
    return sorted(contacts, key=lambda c: c.creation_key)


def choose_canonical(primaries: Iterable[Contact]) -> Contact:
    ordered = canonical_order(primaries)
    if not ordered:
        raise StoreIntegrityError("Cannot choose a canonical primary from an empty set")
    return ordered[0]


def resolve_cluster(store: ContactStore, email: Optional[str], phone: Optional[str]) -> ResolvedCluster:
    matches: Dict[int, Contact] = {}
    if email:
        for contact in store.find_by_email(email):
            matches[contact.id] = contact
    if phone:
        for contact in store.find_by_phone(phone):
            matches[contact.id] = contact

    primaries: Dict[int, Contact] = {}
    for contact in matches.values():
        if contact.is_primary:
            primaries[contact.id] = contact
            continue

        owner = store.find_by_id(contact.linkedId) if contact.linkedId is not None else None
        if owner is None or not owner.is_primary:
            logger.error(
                "Secondary contact does not resolve to a primary",
                contact_id=contact.id,
                linked_id=contact.linkedId,
            )
            raise StoreIntegrityError(
                f"Contact {contact.id} links to {contact.linkedId}, which is not a primary contact"
            )
        primaries[owner.id] = owner

    return ResolvedCluster(
        matches=list(matches.values()),
        primaries=canonical_order(primaries.values()),
    )


def consolidate(store: ContactStore, primaries: List[Contact]) -> Contact:
    """Merge the clusters of ``primaries`` under the earliest-created one.

    Every other primary, and every row linked to it, is relinked to the
    canonical primary as a secondary. Rows that already point at the
    canonical primary are left untouched, so re-running is a no-op.
    """
    canonical = choose_canonical(primaries)
    demoted = []

    for primary in primaries:
        if primary.id == canonical.id:
            continue
        for contact in store.find_by_id_or_linked_id(primary.id):
            if contact.id == canonical.id:
                continue
            if contact.linkPrecedence == LinkPrecedence.SECONDARY and contact.linkedId == canonical.id:
                continue
            store.update(
                contact.id,
                linkPrecedence=LinkPrecedence.SECONDARY,
                linkedId=canonical.id,
            )
        demoted.append(primary.id)

    if demoted:
        logger.info("Merged contact clusters", primary_id=canonical.id, merged_ids=demoted)
    return canonical


def fetch_cluster(store: ContactStore, primary_id: int) -> Tuple[Contact, List[Contact]]:
    """Return the primary and its secondaries (in creation order) for one cluster."""
    members = store.find_by_id_or_linked_id(primary_id)
    primaries = [c for c in members if c.is_primary]
    if len(primaries) != 1 or primaries[0].id != primary_id:
        raise StoreIntegrityError(
            f"Cluster of contact {primary_id} has {len(primaries)} primaries after consolidation"
        )

    secondaries = canonical_order(c for c in members if not c.is_primary)
    return primaries[0], secondaries


def needs_new_contact(email: Optional[str], phone: Optional[str], cluster: List[Contact]) -> bool:
    emails = {c.email for c in cluster if c.email}
    phones = {c.phoneNumber for c in cluster if c.phoneNumber}

    if email and email not in emails:
        return True
    if phone and phone not in phones:
        return True
    if email and phone:
        return not any(c.email == email and c.phoneNumber == phone for c in cluster)
    return False


def create_primary(store: ContactStore, email: Optional[str], phone: Optional[str]) -> Contact:
    contact = store.create(email=email, phone_number=phone, link_precedence=LinkPrecedence.PRIMARY)
    logger.info("Created primary contact", contact_id=contact.id)
    return contact


def admit_contact(
    store: ContactStore,
    email: Optional[str],
    phone: Optional[str],
    primary: Contact,
    cluster: List[Contact],
) -> Optional[Contact]:
    """Record the fragment as a new secondary when it adds anything to ``cluster``.

    ``cluster`` must be the post-merge membership read in the current
    transaction. Existing rows are never backfilled; returns the created
    secondary, or ``None`` when the fragment is already fully known.
    """
    if not needs_new_contact(email, phone, cluster):
        return None

    contact = store.create(
        email=email,
        phone_number=phone,
        link_precedence=LinkPrecedence.SECONDARY,
        linked_id=primary.id,
    )
    logger.info("Created secondary contact", contact_id=contact.id, primary_id=primary.id)
    return contact


def _unique(values: Iterable[Optional[str]]) -> List[str]:
    seen = []
    for value in values:
        if value and value not in seen:
            seen.append(value)
    return seen


def project_response(primary: Contact, secondaries: List[Contact]) -> ContactResponse:
    ordered = canonical_order(secondaries)
    return ContactResponse(
        primaryContactId=primary.id,
        emails=_unique([primary.email] + [c.email for c in ordered]),
        phoneNumbers=_unique([primary.phoneNumber] + [c.phoneNumber for c in ordered]),
        secondaryContactIds=[c.id for c in ordered],
    )


def reconcile(store: ContactStore, email: Optional[str], phone: Optional[str]) -> ContactResponse:
    """One resolve/consolidate/admit/project pass; the caller owns the transaction."""
    resolved = resolve_cluster(store, email, phone)

    if not resolved.primaries:
        primary = create_primary(store, email, phone)
        return project_response(primary, [])

    if len(resolved.primaries) > 1:
        canonical = consolidate(store, resolved.primaries)
    else:
        canonical = resolved.primaries[0]

    primary, secondaries = fetch_cluster(store, canonical.id)
    if admit_contact(store, email, phone, primary, [primary] + secondaries) is not None:
        primary, secondaries = fetch_cluster(store, canonical.id)

    return project_response(primary, secondaries)


def identify(email: Optional[str], phone: Optional[str], settings: Settings) -> FinalResponse:
    if not email and not phone:
        raise ValidationError("Either email or phoneNumber must be provided")

    attempts = settings.identify_max_attempts
    for attempt in range(1, attempts + 1):
        conn = get_db_connection(settings)
        try:
            with transaction(conn):
                contact = reconcile(ContactStore(conn), email, phone)
            return FinalResponse(contact=contact)
        except ReconciliationError as exc:
            if not exc.retryable or attempt == attempts:
                raise
            logger.warning("Retrying identify", attempt=attempt, error=exc.message, code=exc.code)
        finally:
            conn.close()
        # linear backoff between attempts
        time.sleep(settings.identify_retry_backoff * attempt)
