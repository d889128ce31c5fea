"""Match a caller to a patient record, or create one.

Search order is exact email, then exact phone (E.164 and local forms), then
create. A shared household email or phone must never merge two people, so
a match is only trusted when the caller's name is similar enough to the
record's. A phone match with no name to compare is treated as unconfirmed
and a fresh record is created.

Update policy: form submissions may correct name and email. Voice turns may
only fill in a missing email; they never overwrite a name or an existing
email, since speech recognition mangles both.
"""

import logging
import re

from clinicdesk.errors import SchedulerError
from clinicdesk.models import PatientIdentity
from clinicdesk.name_matching import (
    DEFAULT_THRESHOLD,
    DEFAULT_TYPO_DISTANCE,
    name_similarity,
    normalize_name,
)
from clinicdesk.retry import DEFAULT_POLICY, RetryPolicy, with_retry
from clinicdesk.scheduler import SchedulerClient
from clinicdesk.validation import (
    mask_phone,
    phone_variants,
    sanitize_email,
    sanitize_phone_e164,
    split_full_name,
    validate_name,
)

logger = logging.getLogger(__name__)

DEFAULT_FIRST_NAME = "New Caller"
DEFAULT_LAST_NAME = "Unknown"

INVALID_EMAIL_PATTERN = re.compile(r"email.*invalid|invalid.*email", re.IGNORECASE)


class IdentityResolver:
    def __init__(
        self,
        scheduler: SchedulerClient,
        threshold: float = DEFAULT_THRESHOLD,
        typo_distance: int = DEFAULT_TYPO_DISTANCE,
        retry_policy: RetryPolicy = DEFAULT_POLICY,
    ):
        self.scheduler = scheduler
        self.threshold = threshold
        self.typo_distance = typo_distance
        self.retry_policy = retry_policy

    def similar(self, a: str | None, b: str | None) -> bool:
        return name_similarity(a, b, self.typo_distance) >= self.threshold

    async def resolve_or_create(
        self,
        phone: str | None,
        full_name: str | None = None,
        email: str | None = None,
        is_form_submission: bool = False,
        exclude_ids: tuple[str, ...] = (),
    ) -> PatientIdentity:
        """Find the caller's patient record or create one.

        Records in ``exclude_ids`` are never returned, even on an exact email or
        phone match with a similar name: the caller has said they are someone else.
        """
        e164 = sanitize_phone_e164(phone)
        clean_email = sanitize_email(email)
        name = validate_name(full_name)

        if clean_email:
            match = await self._find_by_email(clean_email)
            if match and match.id in exclude_ids:
                logger.info("Email %s belongs to excluded patient %s: creating new patient", clean_email, match.id)
                return await self._create(name, e164, clean_email)
            if match:
                if name and not self.similar(name, match.full_name):
                    logger.info(
                        "Email %s belongs to %s, caller is %s: creating separate patient",
                        clean_email, match.full_name, name,
                    )
                    return await self._create(name, e164, clean_email)
                return await self._apply_updates(match, name, clean_email, is_form_submission)

        if e164:
            match = await self.lookup_possible_patient(e164)
            if match and match.id in exclude_ids:
                logger.info("Phone match %s was ruled out by the caller: creating new patient", match.id)
                match = None
            if match:
                if not name:
                    logger.warning(
                        "Phone %s matches patient %s but caller gave no name, "
                        "phone may be shared: creating new patient",
                        mask_phone(e164), match.id,
                    )
                    return await self._create(name, e164, clean_email)
                if self.similar(name, match.full_name):
                    return await self._apply_updates(match, name, clean_email, is_form_submission)
                logger.info("Phone match %s is a different person: creating new patient", match.id)

        return await self._create(name, e164, clean_email)

    async def lookup_possible_patient(self, phone: str | None) -> PatientIdentity | None:
        """Return the patient whose record holds ``phone``, if any. Never raises."""
        variants = phone_variants(phone)
        if not variants:
            return None
        for variant in variants:
            try:
                patients = await with_retry(
                    lambda v=variant: self.scheduler.search_patients(v),
                    "patient phone lookup",
                    self.retry_policy,
                )
            except Exception as e:
                logger.error("Phone lookup failed, treating as not found: %s", e)
                return None
            for patient in patients:
                stored = {sanitize_phone_e164(n) or n for n in patient.phone_numbers}
                if stored & set(variants):
                    return patient
        return None

    async def _find_by_email(self, email: str) -> PatientIdentity | None:
        try:
            patients = await with_retry(
                lambda: self.scheduler.search_patients(email),
                "patient email lookup",
                self.retry_policy,
            )
        except Exception as e:
            logger.error("Email lookup failed, treating as not found: %s", e)
            return None
        for patient in patients:
            if patient.email and patient.email.lower() == email.lower():
                return patient
        return None

    def _pending_updates(
        self, patient: PatientIdentity, name: str, email: str | None, is_form_submission: bool
    ) -> dict:
        fields = {}
        if is_form_submission:
            if name and normalize_name(name) != normalize_name(patient.full_name):
                first, last = split_full_name(name)
                fields["first_name"] = first
                fields["last_name"] = last or patient.last_name or DEFAULT_LAST_NAME
            if email and email.lower() != (patient.email or "").lower():
                fields["email"] = email
        elif email and not patient.email:
            fields["email"] = email
        return fields

    async def _apply_updates(
        self, patient: PatientIdentity, name: str, email: str | None, is_form_submission: bool
    ) -> PatientIdentity:
        fields = self._pending_updates(patient, name, email, is_form_submission)
        if not fields:
            return patient
        logger.info("Updating patient %s fields: %s", patient.id, sorted(fields))
        return await with_retry(
            lambda: self.scheduler.update_patient(patient.id, fields),
            "patient update",
            self.retry_policy,
        )

    async def _create(self, name: str, phone: str | None, email: str | None) -> PatientIdentity:
        first, last = split_full_name(name)
        first = first or DEFAULT_FIRST_NAME
        last = last or DEFAULT_LAST_NAME
        try:
            patient = await with_retry(
                lambda: self.scheduler.create_patient(first, last, phone=phone, email=email),
                "patient create",
                self.retry_policy,
            )
        except SchedulerError as e:
            if not (email and 400 <= e.status_code < 500 and INVALID_EMAIL_PATTERN.search(e.body)):
                raise
            logger.warning("Scheduler rejected email %s, creating patient without it", email)
            patient = await with_retry(
                lambda: self.scheduler.create_patient(first, last, phone=phone),
                "patient create (no email)",
                self.retry_policy,
            )
        logger.info("Created patient %s (%s %s)", patient.id, first, last)
        return patient
