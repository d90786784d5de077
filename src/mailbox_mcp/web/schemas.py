"""Pydantic models declaring tool input and output shapes."""

from __future__ import annotations

from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field

from mailbox_mcp.core.models import (
    AccountSummary,
    AttachmentInfo,
    FullMessage,
    MessageListItem,
    SearchQuery,
)

PositiveUid = Annotated[int, Field(gt=0, description="A message UID")]
FreeText = Annotated[str, Field(min_length=1, description="Free-text body search")]


class _WireModel(BaseModel):
    """Base for models exchanged with clients under camelCase wire names."""

    model_config = ConfigDict(populate_by_name=True)


# Inputs ----------------------------------------------------------------------
class SearchQueryModel(_WireModel):
    """Structured IMAP search predicates; all given predicates must match."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    keyword: str | None = Field(
        default=None, description="Match messages carrying this keyword flag"
    )
    un_keyword: str | None = Field(
        default=None,
        alias="unKeyword",
        description="Exclude messages carrying this keyword flag",
    )
    since: str | None = Field(
        default=None, description="Messages sent on or after this date (YYYY-MM-DD)"
    )
    on: str | None = Field(
        default=None, description="Messages sent on this date (YYYY-MM-DD)"
    )
    before: str | None = Field(
        default=None, description="Messages sent before this date (YYYY-MM-DD)"
    )
    subject: str | None = Field(
        default=None, description="Search for messages with this subject"
    )
    body: str | None = Field(
        default=None, description="Search for messages with this body"
    )
    bcc: str | None = Field(default=None, description="Search for messages with this BCC")
    cc: str | None = Field(default=None, description="Search for messages with this CC")
    to: str | None = Field(
        default=None, description="Search for messages sent to this address"
    )
    from_: str | None = Field(
        default=None,
        alias="from",
        description="Search for messages sent from this address",
    )

    def to_query(self) -> SearchQuery:
        """Convert to the transport-neutral query record."""
        return SearchQuery(
            keyword=self.keyword,
            un_keyword=self.un_keyword,
            since=self.since,
            on=self.on,
            before=self.before,
            subject=self.subject,
            body=self.body,
            bcc=self.bcc,
            cc=self.cc,
            to=self.to,
            from_=self.from_,
        )


class ListAccountsInput(_WireModel):
    """No arguments."""


class SearchInput(_WireModel):
    account_name: str = Field(
        alias="accountName", min_length=1, description="The name of the account to search"
    )
    search_query: SearchQueryModel | FreeText = Field(
        alias="searchQuery",
        description="Search predicates, or a phrase matched against message bodies",
    )
    limit: int | None = Field(
        default=None, gt=0, description="Max number of results to return"
    )


class ReadMessageInput(_WireModel):
    account_name: str = Field(
        alias="accountName",
        min_length=1,
        description="The name of the account to read the message from",
    )
    id: int = Field(gt=0, description="The UID of the message to read")


class LoadMessagesInput(_WireModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    account_name: str = Field(
        alias="accountName",
        min_length=1,
        description="The name of the account to read the messages from",
    )
    ids: list[PositiveUid] = Field(description="The message UIDs to fetch")


# Outputs ---------------------------------------------------------------------
class AccountListItemModel(_WireModel):
    name: str = Field(description="The name of the account (to use in requests)")
    description: str = Field(description="A description of the account")
    imap_username: str = Field(
        alias="imapUsername", description="The IMAP username for the account"
    )

    @classmethod
    def from_record(cls, summary: AccountSummary) -> AccountListItemModel:
        return cls(
            name=summary.name,
            description=summary.description,
            imap_username=summary.username,
        )


class ListAccountsOutput(_WireModel):
    accounts: list[AccountListItemModel]


class MessageListItemModel(_WireModel):
    uid: int = Field(ge=0, description="The unique identifier of the message")
    date: str = Field(description="The date the message was sent")
    from_: list[str] = Field(alias="from", description="The sender(s) of the message")
    to: list[str] = Field(description="The recipient(s) of the message")
    subject: str = Field(description="The subject of the message")
    snippet: str = Field(description="A short snippet of the message content")

    @classmethod
    def from_record(cls, item: MessageListItem) -> MessageListItemModel:
        return cls(
            uid=item.uid,
            date=item.date,
            from_=list(item.from_),
            to=list(item.to),
            subject=item.subject,
            snippet=item.snippet,
        )


class SearchOutput(_WireModel):
    results: list[MessageListItemModel]


class AttachmentModel(_WireModel):
    filename: str | None = Field(
        default=None, description="The filename of the attachment"
    )
    content_type: str | None = Field(
        default=None,
        alias="contentType",
        description="The content type of the attachment",
    )
    size: int = Field(ge=0, description="The size of the attachment in bytes")

    @classmethod
    def from_record(cls, attachment: AttachmentInfo) -> AttachmentModel:
        return cls(
            filename=attachment.filename,
            content_type=attachment.content_type,
            size=attachment.size,
        )


class FullMessageModel(_WireModel):
    uid: int = Field(ge=0, description="The unique identifier of the message")
    date: str = Field(description="The date the message was sent")
    from_: list[str] = Field(alias="from", description="The sender(s) of the message")
    to: list[str] = Field(description="The recipient(s) of the message")
    cc: list[str] = Field(description="The CC recipient(s) of the message")
    subject: str = Field(description="The subject of the message")
    headers: dict[str, list[str]] = Field(description="All email headers")
    text: str | None = Field(
        default=None, description="The plain text content of the message"
    )
    html: str | None = Field(default=None, description="The HTML content of the message")
    attachments: list[AttachmentModel]

    @classmethod
    def from_record(cls, message: FullMessage) -> FullMessageModel:
        return cls(
            uid=message.uid,
            date=message.date,
            from_=list(message.from_),
            to=list(message.to),
            cc=list(message.cc),
            subject=message.subject,
            headers=message.headers,
            text=message.text,
            html=message.html,
            attachments=[
                AttachmentModel.from_record(attachment)
                for attachment in message.attachments
            ],
        )


class LoadMessagesOutput(_WireModel):
    messages: list[FullMessageModel] = Field(
        description="Messages that were found for the requested UIDs"
    )


__all__ = [
    "AccountListItemModel",
    "AttachmentModel",
    "FullMessageModel",
    "ListAccountsInput",
    "ListAccountsOutput",
    "LoadMessagesInput",
    "LoadMessagesOutput",
    "MessageListItemModel",
    "ReadMessageInput",
    "SearchInput",
    "SearchOutput",
    "SearchQueryModel",
]
