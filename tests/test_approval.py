"""Tests for approval modes and policy."""

from __future__ import annotations

import pytest

from llamacode.ai.orchestration.approval import ApprovalMode, ApprovalPolicy
from llamacode.ai.orchestration.tools import ToolKind, ToolSpec


def make_spec(name: str, kind: ToolKind) -> ToolSpec:
    return ToolSpec(name=name, description=name, kind=kind)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("yolo", ApprovalMode.YOLO),
        (" AUTO-EDIT ", ApprovalMode.AUTO_EDIT),
        ("auto_edit", ApprovalMode.AUTO_EDIT),
        (None, ApprovalMode.DEFAULT),
        ("sometimes", ApprovalMode.DEFAULT),
        (ApprovalMode.YOLO, ApprovalMode.YOLO),
    ],
)
def test_mode_parsing(raw, expected: ApprovalMode) -> None:
    assert ApprovalMode.parse(raw) is expected


class TestApprovalPolicy:
    def test_read_only_tools_never_need_approval(self) -> None:
        policy = ApprovalPolicy()

        assert policy.requires_approval(make_spec("read_file", ToolKind.READ)) is False
        assert policy.requires_approval(make_spec("grep", ToolKind.SEARCH)) is False

    def test_default_mode_gates_mutations(self) -> None:
        policy = ApprovalPolicy()

        assert policy.requires_approval(make_spec("write_file", ToolKind.EDIT)) is True
        assert policy.requires_approval(make_spec("shell", ToolKind.EXECUTE)) is True

    def test_auto_edit_only_covers_edits(self) -> None:
        policy = ApprovalPolicy(ApprovalMode.AUTO_EDIT)

        assert policy.requires_approval(make_spec("write_file", ToolKind.EDIT)) is False
        assert policy.requires_approval(make_spec("rm", ToolKind.DELETE)) is True

    def test_yolo_approves_everything(self) -> None:
        policy = ApprovalPolicy()
        policy.mode = ApprovalMode.YOLO

        assert policy.requires_approval(make_spec("shell", ToolKind.EXECUTE)) is False

    def test_allow_always_is_per_tool(self) -> None:
        policy = ApprovalPolicy()
        policy.allow_always("shell")

        assert policy.always_allowed == frozenset({"shell"})
        assert policy.requires_approval(make_spec("shell", ToolKind.EXECUTE)) is False
        assert policy.requires_approval(make_spec("rm", ToolKind.DELETE)) is True
