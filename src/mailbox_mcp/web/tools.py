"""MCP server wiring tool calls to mailbox operations."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import mcp.types as types
from mcp.server.lowlevel import Server
from pydantic import BaseModel, ValidationError

from mailbox_mcp import __version__
from mailbox_mcp.core.errors import MailboxError, MessageNotFoundError
from mailbox_mcp.mailbox import MailboxOperations
from mailbox_mcp.transport import ImapError

from .schemas import (
    AccountListItemModel,
    FullMessageModel,
    ListAccountsInput,
    ListAccountsOutput,
    LoadMessagesInput,
    LoadMessagesOutput,
    MessageListItemModel,
    ReadMessageInput,
    SearchInput,
    SearchOutput,
)

LOGGER = logging.getLogger(__name__)

SERVER_NAME = "mailbox-mcp"


class ToolCallError(Exception):
    """Tool failure reported back to the client as an error result."""


@dataclass(frozen=True, slots=True)
class _Tool:
    title: str
    description: str
    input_model: type[BaseModel]
    output_model: type[BaseModel]
    handler: Callable[[Any], Awaitable[BaseModel]]

    def describe(self, name: str) -> types.Tool:
        return types.Tool(
            name=name,
            title=self.title,
            description=self.description,
            inputSchema=self.input_model.model_json_schema(by_alias=True),
            outputSchema=self.output_model.model_json_schema(
                by_alias=True, mode="serialization"
            ),
        )


def _describe_validation_error(error: ValidationError) -> str:
    issues = []
    for issue in error.errors():
        location = ".".join(str(part) for part in issue["loc"]) or "arguments"
        issues.append(f"{location}: {issue['msg']}")
    return "; ".join(issues)


def _mailbox_tools(operations: MailboxOperations) -> dict[str, _Tool]:
    async def list_accounts(_: ListAccountsInput) -> ListAccountsOutput:
        return ListAccountsOutput(
            accounts=[
                AccountListItemModel.from_record(summary)
                for summary in operations.list_accounts()
            ]
        )

    async def search_messages(args: SearchInput) -> SearchOutput:
        query = args.search_query
        rows = await operations.search_messages(
            args.account_name,
            query if isinstance(query, str) else query.to_query(),
            args.limit,
        )
        return SearchOutput(results=[MessageListItemModel.from_record(row) for row in rows])

    async def read_message(args: ReadMessageInput) -> FullMessageModel:
        message = await operations.read_message(args.account_name, args.id)
        if message is None:
            raise MessageNotFoundError(args.id)
        return FullMessageModel.from_record(message)

    async def load_messages(args: LoadMessagesInput) -> LoadMessagesOutput:
        messages = await operations.read_messages(args.account_name, args.ids)
        return LoadMessagesOutput(
            messages=[FullMessageModel.from_record(message) for message in messages]
        )

    return {
        "list_accounts": _Tool(
            title="List IMAP accounts",
            description="Returns the configured accounts and their IMAP usernames.",
            input_model=ListAccountsInput,
            output_model=ListAccountsOutput,
            handler=list_accounts,
        ),
        "search_messages": _Tool(
            title="Search messages",
            description=(
                "Search the INBOX of an account. Returns basic metadata and UIDs "
                "sorted by UID."
            ),
            input_model=SearchInput,
            output_model=SearchOutput,
            handler=search_messages,
        ),
        "read_message": _Tool(
            title="Read message",
            description="Fetch a full message by UID from the INBOX.",
            input_model=ReadMessageInput,
            output_model=FullMessageModel,
            handler=read_message,
        ),
        "load_messages": _Tool(
            title="Load messages",
            description="Fetch several full messages by UID from the INBOX.",
            input_model=LoadMessagesInput,
            output_model=LoadMessagesOutput,
            handler=load_messages,
        ),
    }


def build_server(operations: MailboxOperations) -> Server:
    """Return a fresh MCP server whose tools call into ``operations``.

    Tool failures surface as error results: mailbox and transport errors keep
    their message, anything unexpected is logged and reported generically.
    """
    server: Server = Server(SERVER_NAME, version=__version__)
    tools = _mailbox_tools(operations)

    async def report_progress(progress: float, total: float | None = None) -> None:
        ctx = server.request_context
        token = ctx.meta.progressToken if ctx.meta is not None else None
        if token is not None:
            await ctx.session.send_progress_notification(token, progress, total=total)

    @server.list_tools()
    async def list_tools() -> list[types.Tool]:
        return [tool.describe(name) for name, tool in tools.items()]

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        tool = tools.get(name)
        if tool is None:
            raise ToolCallError(f"Unknown tool: {name}")
        try:
            parsed = tool.input_model.model_validate(arguments or {})
        except ValidationError as exc:
            raise ToolCallError(
                f"Invalid arguments for tool {name}: {_describe_validation_error(exc)}"
            ) from exc

        await report_progress(0)
        try:
            payload = await tool.handler(parsed)
        except (MailboxError, ImapError) as exc:
            LOGGER.info("Tool %s failed: %s", name, exc)
            raise
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.exception("Unexpected failure in tool %s", name)
            raise ToolCallError("Internal error") from exc
        await report_progress(1, total=1)
        return payload.model_dump(by_alias=True, exclude_none=True)

    return server


__all__ = ["SERVER_NAME", "ToolCallError", "build_server"]
