"""Pydantic configuration schema for the RFQ reply tracker.

This module defines the configuration schema that mirrors config.yaml structure.
All configuration is validated against these models at startup.

Usage:
    from rfq_tracker.config_schema import AppConfig

    config = AppConfig(**yaml_data)
"""

from typing import Literal

import regex
from pydantic import BaseModel, Field, field_validator

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1

# How a counted reply with no destination-folder signal is tallied
ReplyKind = Literal["quote", "clarification", "unknown"]


def _validate_folder_name(v: str) -> str:
    if not v or not v.strip():
        raise ValueError("Folder name cannot be empty")
    if ".." in v:
        raise ValueError("Folder name cannot contain '..' (path traversal)")
    return v


class AuthConfig(BaseModel):
    """Azure AD authentication configuration."""

    client_id: str = Field(description="Azure AD Application (client) ID")
    tenant_id: str = Field(
        default="common",
        description="Azure AD Directory (tenant) ID or 'common' for personal accounts",
    )
    scopes: list[str] = Field(
        default=[
            "Mail.ReadWrite",
            "Mail.Send",
            "User.Read",
        ],
        description="Microsoft Graph API permission scopes",
    )
    token_cache_path: str = Field(
        default="data/token_cache.json",
        description="Path to MSAL token cache file",
    )

    @field_validator("token_cache_path")
    @classmethod
    def validate_token_cache_path(cls, v: str) -> str:
        """Ensure token cache path doesn't contain path traversal."""
        if not v or not v.strip():
            raise ValueError("Token cache path cannot be empty")
        if ".." in v:
            raise ValueError("Token cache path cannot contain '..' (path traversal)")
        return v


class MonitorConfig(BaseModel):
    """Reconciliation poller configuration."""

    poll_interval_seconds: float = Field(
        default=5.0,
        ge=1.0,
        le=300.0,
        description="Seconds between reconciliation ticks",
    )
    timeout_minutes: float = Field(
        default=10.0,
        gt=0,
        le=1440,
        description="Absolute wall-clock budget for one monitoring run",
    )
    fan_out: int = Field(
        default=5,
        ge=1,
        le=20,
        description="Max concurrent gateway queries within one tick",
    )
    baseline_margin_seconds: int = Field(
        default=60,
        ge=0,
        le=3600,
        description="Safety margin subtracted from the earliest send time",
    )
    recovery_window_minutes: int = Field(
        default=60,
        ge=1,
        le=10080,
        description="Batches older than this are not restored on startup",
    )
    conversation_scan_limit: int = Field(
        default=50,
        ge=1,
        le=500,
        description="Max messages fetched per tracked conversation",
    )
    folder_scan_limit: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Max messages fetched per folder in the supplementary sweep",
    )


class ClassifierConfig(BaseModel):
    """Reply/bounce classification rules.

    All phrase lists are matched as case-insensitive substrings.
    """

    topic_marker: str = Field(
        default="rfq",
        min_length=1,
        description="Token every batch-related subject must contain",
    )
    correlation_pattern: str = Field(
        default=r"MAT-\d+",
        description="Regex extracting the material/correlation key from a subject",
    )
    failure_senders: list[str] = Field(
        default=["postmaster", "mailer-daemon"],
        description="Sender address/name fragments of automated failure notices",
    )
    noreply_sender: str = Field(
        default="noreply",
        description="Sender fragment treated as a failure notice when the subject says 'failed'",
    )
    failure_subject_phrases: list[str] = Field(
        default=[
            "undeliverable",
            "delivery failure",
            "delivery has failed",
            "mail delivery failed",
        ],
        description="Subject phrases of delivery-failure notices",
    )
    bounce_body_signatures: list[str] = Field(
        default=[
            "message undeliverable",
            "delivery has failed",
            "delivery failed",
            "returned mail",
            "mail delivery subsystem",
            "delivery status notification",
            "delivery to the following recipient failed",
            "could not be delivered",
            "permanent failure",
            "temporary failure",
        ],
        description="Body fragments of delivery-failure notices",
    )
    min_body_length: int = Field(
        default=50,
        ge=0,
        le=10000,
        description="Replies with a shorter stripped body are not substantive",
    )
    unfiled_reply_kind: ReplyKind = Field(
        default="quote",
        description="How to tally a counted reply that is not in any destination folder",
    )

    @field_validator("correlation_pattern")
    @classmethod
    def validate_correlation_pattern(cls, v: str) -> str:
        """Ensure the correlation pattern compiles."""
        try:
            regex.compile(v)
        except regex.error as e:
            raise ValueError(f"Invalid correlation pattern '{v}': {e}") from e
        return v


class DestinationRule(BaseModel):
    """A folder-name rule identifying where supplier replies get filed."""

    kind: Literal["quote", "clarification"] = Field(description="Reply kind filed here")
    contains: str = Field(min_length=1, description="Folder name must contain this")
    excludes: list[str] = Field(
        default_factory=list,
        description="Folder name must not contain any of these",
    )


class FoldersConfig(BaseModel):
    """Mailbox folder layout for RFQ batches."""

    material_folder_pattern: str = Field(
        default=r"^MAT-\d+$",
        description="Regex matching per-material parent folders",
    )
    sent_rfqs: str = Field(
        default="Sent RFQs",
        description="Subfolder of each material folder receiving sent RFQs",
    )
    material_subfolders: list[str] = Field(
        default=[
            "Sent RFQs",
            "Quotes",
            "Clarification Requests",
            "Awaiting Clarification",
            "Awaiting Engineer",
            "Engineer Response",
        ],
        description="Subfolders created under a material folder the first time an RFQ for it is filed",
    )
    sent_label: str = Field(
        default="SENT RFQ",
        description="Category applied to sent RFQs",
    )
    destination_rules: list[DestinationRule] = Field(
        default_factory=lambda: [
            DestinationRule(kind="quote", contains="quote", excludes=["sent"]),
            DestinationRule(kind="clarification", contains="clarification", excludes=["awaiting"]),
        ],
        description="Rules identifying destination (filed) folders",
    )
    file_replies: bool = Field(
        default=False,
        description="Move counted replies outside a destination folder into '<material>/<kind folder>'",
    )
    quote_folder: str = Field(
        default="Quotes",
        description="Material subfolder receiving replies tallied as quotes",
    )
    clarification_folder: str = Field(
        default="Clarification Requests",
        description="Material subfolder receiving replies tallied as clarification requests",
    )
    quote_label: str = Field(
        default="QUOTE",
        description="Category applied to filed quotes",
    )
    clarification_label: str = Field(
        default="CLARIFICATION",
        description="Category applied to filed clarification requests",
    )

    @field_validator("sent_rfqs", "quote_folder", "clarification_folder")
    @classmethod
    def validate_sent_rfqs(cls, v: str) -> str:
        """Ensure folder name is not empty and doesn't contain traversal."""
        return _validate_folder_name(v)

    @field_validator("material_folder_pattern")
    @classmethod
    def validate_material_pattern(cls, v: str) -> str:
        """Ensure the material folder pattern compiles."""
        try:
            regex.compile(v)
        except regex.error as e:
            raise ValueError(f"Invalid material folder pattern '{v}': {e}") from e
        return v


class DispatchConfig(BaseModel):
    """Batch send workflow configuration."""

    draft_subject_prefix: str = Field(
        default="RFQ for",
        min_length=1,
        description="Drafts whose subject starts with this are part of the batch",
    )
    sent_lookup_attempts: int = Field(
        default=5,
        ge=1,
        le=20,
        description="Attempts to locate a sent message in Sent Items",
    )
    sent_lookup_delay_seconds: float = Field(
        default=2.0,
        ge=0,
        le=60,
        description="Initial delay between Sent Items lookups (doubles each attempt)",
    )
    file_sent_messages: bool = Field(
        default=True,
        description="Move sent RFQs into '<material>/Sent RFQs' and apply the sent label",
    )


class AutoReplyConfig(BaseModel):
    """Demo auto-reply backend configuration."""

    enabled: bool = Field(
        default=False,
        description="Schedule a simulated supplier reply for every sent RFQ",
    )
    api_base_url: str = Field(
        default="http://localhost:8000/api",
        description="Base URL of the auto-reply backend",
    )
    delay_seconds: int = Field(
        default=5,
        ge=0,
        le=3600,
        description="Delay before the simulated reply is sent",
    )
    reply_type: Literal["random", "quote", "clarification"] = Field(
        default="random",
        description="Kind of simulated reply to request",
    )
    timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        le=300,
        description="HTTP timeout for backend calls",
    )


class StorageConfig(BaseModel):
    """Durable key-value store configuration."""

    db_path: str = Field(
        default="data/rfq_tracker.db",
        description="SQLite database path",
    )

    @field_validator("db_path")
    @classmethod
    def validate_db_path(cls, v: str) -> str:
        """Ensure database path doesn't contain path traversal."""
        if not v or not v.strip():
            raise ValueError("Database path cannot be empty")
        if ".." in v:
            raise ValueError("Database path cannot contain '..' (path traversal)")
        return v


class AppConfig(BaseModel):
    """Root configuration schema for the RFQ reply tracker.

    Validates the entire config.yaml structure. If validation fails at
    startup, the application exits with a clear error.
    """

    schema_version: int = Field(
        default=CURRENT_SCHEMA_VERSION,
        ge=1,
        description="Config schema version for migration tracking",
    )

    auth: AuthConfig
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    folders: FoldersConfig = Field(default_factory=FoldersConfig)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    auto_reply: AutoReplyConfig = Field(default_factory=AutoReplyConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    user_email: str | None = Field(
        default=None,
        description="Override auto-detected mailbox address (optional)",
    )
