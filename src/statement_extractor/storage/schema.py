"""Pydantic schema for the persisted credential cache document."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from statement_extractor.core.models import ExtractedEmailInfo, ExtractionRecord

SCHEMA_VERSION = 1


class ExtractedEmailModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    subject: str
    date: datetime
    pdf_filename: str
    extracted_text: str
    page_count: int = Field(ge=0)

    @classmethod
    def from_domain(cls, info: ExtractedEmailInfo) -> ExtractedEmailModel:
        return cls(
            subject=info.subject,
            date=info.date,
            pdf_filename=info.pdf_filename,
            extracted_text=info.extracted_text,
            page_count=info.page_count,
        )

    def to_domain(self) -> ExtractedEmailInfo:
        return ExtractedEmailInfo(
            subject=self.subject,
            date=self.date,
            pdf_filename=self.pdf_filename,
            extracted_text=self.extracted_text,
            page_count=self.page_count,
        )


class ExtractionRecordModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    sender_email: str = Field(min_length=1)
    sender_name: str
    extracted_emails: dict[str, ExtractedEmailModel]
    last_extraction_date: datetime
    total_pdfs_extracted: int = Field(ge=0)

    @model_validator(mode="after")
    def _check_total(self) -> ExtractionRecordModel:
        if self.total_pdfs_extracted != len(self.extracted_emails):
            raise ValueError(
                f"total_pdfs_extracted={self.total_pdfs_extracted} but "
                f"{len(self.extracted_emails)} entries stored for {self.sender_email}"
            )
        return self

    @classmethod
    def from_domain(cls, record: ExtractionRecord) -> ExtractionRecordModel:
        return cls(
            sender_email=record.sender_email.lower(),
            sender_name=record.sender_name,
            extracted_emails={
                key: ExtractedEmailModel.from_domain(info)
                for key, info in record.extracted_emails.items()
            },
            last_extraction_date=record.last_extraction_date,
            total_pdfs_extracted=record.total_pdfs_extracted,
        )

    def to_domain(self) -> ExtractionRecord:
        return ExtractionRecord(
            sender_email=self.sender_email.lower(),
            sender_name=self.sender_name,
            extracted_emails={
                key: info.to_domain() for key, info in self.extracted_emails.items()
            },
            last_extraction_date=self.last_extraction_date,
        )


class CacheDocument(BaseModel):
    """The whole persisted state: password map plus extraction ledger."""

    model_config = ConfigDict(extra="forbid")

    version: Literal[1] = SCHEMA_VERSION
    passwords: dict[str, str]
    extraction_history: list[ExtractionRecordModel]
