"""Tests for the rename_user tool."""

from __future__ import annotations

import pytest

from ledgerbot.tools.users import RenameUserArgs, rename_user


@pytest.mark.asyncio
async def test_rename_unknown_user(identities, tool_context) -> None:
    tool_context.sender_id = "ou_new"
    tool_context.user_name = None

    result = await rename_user(RenameUserArgs(name=" 张三 "), tool_context)

    assert result == {
        "name": "张三",
        "message": "✅ 设置成功！从现在起，我将称呼您为：张三",
    }
    assert identities.names["ou_new"] == "张三"
    assert tool_context.user_name == "张三"


@pytest.mark.asyncio
async def test_rename_existing_user(identities, tool_context) -> None:
    await rename_user(RenameUserArgs(name="老张"), tool_context)
    assert identities.names["ou_zhang"] == "老张"


@pytest.mark.asyncio
async def test_blank_name_rejected(identities, tool_context) -> None:
    result = await rename_user(RenameUserArgs(name="   "), tool_context)

    assert result == {"error": "名字不能为空"}
    assert identities.names["ou_zhang"] == "Zhang"
