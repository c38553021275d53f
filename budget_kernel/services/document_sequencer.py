"""
DocumentSequencerService -- human-readable document numbers.

Responsibility:
    Hands out the next external number for a document scope (company,
    branch, module, document type, fiscal year) and formats it
    ("PO-0001", "MR-2025-0042").

Architecture position:
    Kernel > Services -- imperative shell infrastructure.
    Called by request controllers when a document is created.

Invariants enforced:
    - Monotonic, gap-free within a scope: the counter row is locked with
      ``SELECT ... FOR UPDATE`` and incremented in place.  The SQL
      aggregate-max-plus-one pattern is never used.
    - A number that no longer fits ``padding_length`` digits is refused
      and the counter does not move.
    - Transactional: an allocated number is only visible once the caller
      commits.  Rollback returns it.

Failure modes:
    - SequenceNotFoundError: scope was never defined.
    - SequenceExhaustedError: padding overflow.
    - DuplicateSequenceError: scope defined twice.
"""

import string
from typing import Iterable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from budget_kernel.domain.dtos import DocumentSequenceInfo, SequenceScope
from budget_kernel.exceptions import (
    DuplicateSequenceError,
    SequenceExhaustedError,
    SequenceNotFoundError,
)
from budget_kernel.logging_config import get_logger
from budget_kernel.models.document_sequence import DocumentSequence
from budget_kernel.services.base import BaseService

logger = get_logger("services.document_sequencer")

DEFAULT_FORMAT = "{prefix}{number}{suffix}"

FORMAT_TOKENS = frozenset({
    "prefix",
    "suffix",
    "number",
    "fiscal_year",
    "fy",
    "module",
    "document_type",
    "branch",
    "company",
})


def check_format_pattern(pattern: str) -> None:
    """
    Refuse a pattern ``format_document_number`` could not render.

    Every replacement field must be a bare known token and ``{number}``
    must appear, otherwise every document in the scope gets the same text.

    Raises:
        ValueError: On unknown or malformed fields, or a missing ``{number}``.
    """
    try:
        fields = [
            (name, spec, conversion)
            for _, name, spec, conversion in string.Formatter().parse(pattern)
            if name is not None
        ]
    except ValueError as exc:
        raise ValueError(f"format_pattern {pattern!r} is malformed: {exc}") from exc

    for name, spec, conversion in fields:
        if name not in FORMAT_TOKENS or spec or conversion:
            raise ValueError(
                f"format_pattern {pattern!r} has unsupported field {{{name}}}; "
                f"use one of {sorted(FORMAT_TOKENS)}"
            )
    if "number" not in {name for name, _, _ in fields}:
        raise ValueError(f"format_pattern {pattern!r} must contain {{number}}")


def format_document_number(
    sequence: DocumentSequenceInfo,
    number: int,
) -> str:
    """Render ``number`` with the sequence's prefix, padding and pattern."""
    scope = sequence.scope
    fiscal_year = str(scope.fiscal_year) if scope.fiscal_year is not None else ""
    return (sequence.format_pattern or DEFAULT_FORMAT).format(
        prefix=sequence.prefix,
        suffix=sequence.suffix,
        number=str(number).zfill(sequence.padding_length),
        fiscal_year=fiscal_year,
        fy=fiscal_year[-2:],
        module=scope.module,
        document_type=scope.document_type,
        branch=scope.branch_id or "",
        company=scope.company_id or "",
    )


class DocumentSequencerService(BaseService[DocumentSequence]):
    """
    Service for document number allocation.

    Contract:
        ``next_number`` returns the formatted string; ``current_number``
        returns the raw counter without moving it.

    Guarantees:
        - Concurrent ``next_number`` calls on the same scope serialize on
          the counter row and never return the same number.

    Non-goals:
        - Does NOT create a sequence on first use.  Scopes are defined up
          front (``define_sequence`` / ``ensure_sequences``).
        - Does NOT call ``session.commit()``.

    Usage:
        with session_scope() as session:
            number = DocumentSequencerService(session).next_number(scope)
    """

    def _to_dto(self, seq: DocumentSequence) -> DocumentSequenceInfo:
        return DocumentSequenceInfo(
            id=seq.id,
            scope=seq.scope,
            prefix=seq.prefix,
            suffix=seq.suffix,
            starting_number=seq.starting_number,
            current_number=seq.current_number,
            increment_by=seq.increment_by,
            padding_length=seq.padding_length,
            format_pattern=seq.format_pattern,
        )

    def define_sequence(
        self,
        scope: SequenceScope,
        actor_id: str,
        prefix: str = "",
        suffix: str = "",
        starting_number: int = 1,
        increment_by: int = 1,
        padding_length: int = 4,
        format_pattern: str | None = None,
    ) -> DocumentSequenceInfo:
        """
        Create the counter for a scope.

        The first ``next_number`` call returns ``starting_number``.

        Raises:
            DuplicateSequenceError: If the scope already has a counter.
            ValueError: If increment_by or padding_length is not positive,
                starting_number is negative, or format_pattern has a field
                other than the known tokens or lacks {number}.
        """
        if format_pattern:
            check_format_pattern(format_pattern)
        if increment_by < 1:
            raise ValueError(f"increment_by must be positive, got {increment_by}")
        if padding_length < 1:
            raise ValueError(f"padding_length must be positive, got {padding_length}")
        if starting_number < 0:
            raise ValueError(f"starting_number must be >= 0, got {starting_number}")

        key = scope.key
        if self._get_orm(scope) is not None:
            raise DuplicateSequenceError(key)

        seq = DocumentSequence(
            scope_key=key,
            module=scope.module,
            document_type=scope.document_type,
            company_id=scope.company_id,
            branch_id=scope.branch_id,
            fiscal_year=scope.fiscal_year,
            prefix=prefix,
            suffix=suffix,
            starting_number=starting_number,
            current_number=starting_number - increment_by,
            increment_by=increment_by,
            padding_length=padding_length,
            format_pattern=format_pattern,
            created_by_id=actor_id,
        )

        savepoint = self.session.begin_nested()
        try:
            self.session.add(seq)
            self.session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            raise DuplicateSequenceError(key)

        logger.info(
            "document_sequence_defined",
            extra={
                "scope_key": key,
                "prefix": prefix,
                "padding_length": padding_length,
                "actor_id": actor_id,
            },
        )
        return self._to_dto(seq)

    def next_number(self, scope: SequenceScope) -> str:
        """
        Allocate and format the next number for ``scope``.

        Raises:
            SequenceNotFoundError: If the scope was never defined.
            SequenceExhaustedError: If the next number needs more than
                ``padding_length`` digits.  The counter is not advanced.
        """
        key = scope.key
        # Expire cached rows so the locked read sees the committed counter
        self.session.expire_all()
        seq = self.session.execute(
            select(DocumentSequence)
            .where(DocumentSequence.scope_key == key)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if seq is None:
            raise SequenceNotFoundError(key)

        candidate = seq.current_number + seq.increment_by
        if len(str(candidate)) > seq.padding_length:
            logger.warning(
                "document_sequence_exhausted",
                extra={
                    "scope_key": key,
                    "next_number": candidate,
                    "padding_length": seq.padding_length,
                },
            )
            raise SequenceExhaustedError(key, candidate, seq.padding_length)

        # Render before advancing so a formatting failure burns no number
        number = format_document_number(self._to_dto(seq), candidate)
        seq.current_number = candidate
        self.session.flush()

        logger.debug(
            "document_number_allocated",
            extra={"scope_key": key, "value": candidate, "document_number": number},
        )
        return number

    def current_number(self, scope: SequenceScope) -> int:
        """
        The last allocated value (``starting_number - increment_by`` before
        the first allocation).

        Raises:
            SequenceNotFoundError: If the scope was never defined.
        """
        seq = self._get_orm(scope)
        if seq is None:
            raise SequenceNotFoundError(scope.key)
        return seq.current_number

    def get_sequence(self, scope: SequenceScope) -> DocumentSequenceInfo | None:
        seq = self._get_orm(scope)
        return self._to_dto(seq) if seq else None

    def get_sequence_by_id(self, sequence_id: UUID) -> DocumentSequenceInfo | None:
        seq = self.session.get(DocumentSequence, sequence_id)
        return self._to_dto(seq) if seq else None

    def ensure_sequences(
        self,
        definitions: Iterable,
        fiscal_year: int | None,
        actor_id: str,
        company_id: str | None = None,
        branch_id: str | None = None,
    ) -> list[DocumentSequenceInfo]:
        """
        Define every configured sequence that does not exist yet.

        ``definitions`` are ``budget_config.SequenceDef`` objects (anything
        with module, document_type, prefix, suffix, starting_number,
        increment_by, padding_length, format_pattern and per_fiscal_year).
        Existing scopes are left as they are, so calling this at every
        fiscal-year rollover is safe.
        """
        ensured: list[DocumentSequenceInfo] = []
        created = 0
        for definition in definitions:
            scope = SequenceScope(
                module=definition.module,
                document_type=definition.document_type,
                company_id=company_id,
                branch_id=branch_id,
                fiscal_year=fiscal_year if definition.per_fiscal_year else None,
            )
            existing = self._get_orm(scope)
            if existing is not None:
                ensured.append(self._to_dto(existing))
                continue
            ensured.append(
                self.define_sequence(
                    scope,
                    actor_id=actor_id,
                    prefix=definition.prefix,
                    suffix=definition.suffix,
                    starting_number=definition.starting_number,
                    increment_by=definition.increment_by,
                    padding_length=definition.padding_length,
                    format_pattern=definition.format_pattern,
                )
            )
            created += 1

        logger.info(
            "document_sequences_ensured",
            extra={"fiscal_year": fiscal_year, "created_count": created, "total": len(ensured)},
        )
        return ensured

    def _get_orm(self, scope: SequenceScope) -> DocumentSequence | None:
        return self.session.execute(
            select(DocumentSequence).where(DocumentSequence.scope_key == scope.key)
        ).scalar_one_or_none()
