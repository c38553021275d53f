"""
Module: budget_kernel.models.document_sequence
Responsibility: Locked counter rows for external document numbers
    (PO-0001, MR-2025-0042, ...).
Architecture position: Kernel > Models.

Invariants enforced:
    - One row per scope (company, branch, module, document type, fiscal year);
      scope_key is unique.
    - current_number only moves forward.  It starts at
      starting_number - increment_by so the first allocation yields
      starting_number.
"""

from __future__ import annotations

from sqlalchemy import CheckConstraint, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from budget_kernel.db.base import TrackedBase
from budget_kernel.domain.dtos import SequenceScope

SCOPE_KEY_LENGTH = 255


class DocumentSequence(TrackedBase):
    """Document numbering counter."""

    __tablename__ = "document_sequences"

    __table_args__ = (
        UniqueConstraint("scope_key", name="uq_document_sequence_scope"),
        CheckConstraint("increment_by > 0", name="ck_sequence_increment_positive"),
        CheckConstraint("padding_length > 0", name="ck_sequence_padding_positive"),
        CheckConstraint("starting_number >= 0", name="ck_sequence_start_non_negative"),
    )

    scope_key: Mapped[str] = mapped_column(String(SCOPE_KEY_LENGTH), nullable=False)

    module: Mapped[str] = mapped_column(String(50), nullable=False)

    document_type: Mapped[str] = mapped_column(String(50), nullable=False)

    company_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    branch_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    fiscal_year: Mapped[int | None] = mapped_column(Integer, nullable=True)

    prefix: Mapped[str] = mapped_column(String(20), default="", nullable=False)

    suffix: Mapped[str] = mapped_column(String(20), default="", nullable=False)

    starting_number: Mapped[int] = mapped_column(default=1, nullable=False)

    current_number: Mapped[int] = mapped_column(nullable=False)

    increment_by: Mapped[int] = mapped_column(default=1, nullable=False)

    padding_length: Mapped[int] = mapped_column(Integer, default=4, nullable=False)

    # Tokens: {prefix} {number} {suffix} {fiscal_year} {fy} {module}
    # {document_type} {branch} {company}
    format_pattern: Mapped[str | None] = mapped_column(String(100), nullable=True)

    @property
    def scope(self) -> SequenceScope:
        return SequenceScope(
            module=self.module,
            document_type=self.document_type,
            company_id=self.company_id,
            branch_id=self.branch_id,
            fiscal_year=self.fiscal_year,
        )

    def __repr__(self) -> str:
        return f"<DocumentSequence {self.scope_key}: {self.current_number}>"
