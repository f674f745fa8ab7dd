"""User identity tool: lets a user tell the bot what to call them."""

from __future__ import annotations

from pydantic import BaseModel

from ledgerbot.bot.formatters import format_renamed
from ledgerbot.ledger.users import InvalidNameError
from ledgerbot.tools.registry import ToolContext, ToolName, default_registry


class RenameUserArgs(BaseModel):
    """Arguments of ``rename_user``."""

    name: str


RENAME_USER_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "name": {
            "type": "string",
            "description": "The name the user wants to be called, e.g. '张三' from '我是张三'.",
        },
    },
    "required": ["name"],
}


@default_registry.tool(
    name=ToolName.RENAME_USER,
    description=(
        "Set the name the bot uses for the current user. Use when the user "
        "introduces themselves ('我是XXX') or asks to be called something ('叫我XXX')."
    ),
    parameters_schema=RENAME_USER_SCHEMA,
    args_model=RenameUserArgs,
)
async def rename_user(args: RenameUserArgs, ctx: ToolContext) -> dict:
    try:
        name = await ctx.identities.set_name(ctx.sender_id, args.name)
    except InvalidNameError:
        return {"error": "名字不能为空"}

    ctx.user_name = name
    return {"name": name, "message": format_renamed(name)}
