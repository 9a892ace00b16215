"""Tests for tools.code_tools -- lint_file and code_outline.

Run with:
    python -m pytest tests/tools/test_code_tools.py -v
"""

import pytest

from tools.base import InvalidParameters, ResourceNotFound
from tools.code_tools import CodeOutlineTool, LintFileTool, lint_source, outline_source


SAMPLE = '''\
import os
from typing import List


class Greeter(Base):
    def __init__(self, name):
        self.name = name

    async def greet(self, *args, loud=False, **kw):
        pass


def helper(a, b=1):
    return a + b
'''


class TestLintSource:
    def test_clean_python(self):
        assert lint_source("x = 1\n", ".py") == []

    def test_python_syntax_error(self):
        problems = lint_source("def broken(:\n    pass\n", ".py")
        assert len(problems) == 1
        assert problems[0].startswith("line 1:")

    def test_json_error_line(self):
        problems = lint_source('{\n  "a": 1,\n}\n', ".json")
        assert problems and problems[0].startswith("line 3:")

    def test_yaml_error(self):
        assert lint_source("key: [unclosed\n", ".yaml")

    def test_yaml_multi_document_ok(self):
        assert lint_source("a: 1\n---\nb: 2\n", ".yml") == []

    def test_unsupported_suffix(self):
        with pytest.raises(InvalidParameters):
            lint_source("whatever", ".rs")


class TestLintFileTool:
    @pytest.mark.asyncio
    async def test_reports_clean_file(self, tmp_path):
        (tmp_path / "ok.py").write_text("x = 1\n")
        result = await LintFileTool(tmp_path).create_invocation({"path": "ok.py"}).execute()
        assert result.success
        assert result.content == "No problems found in ok.py"

    @pytest.mark.asyncio
    async def test_problems_are_content_not_errors(self, tmp_path):
        (tmp_path / "bad.json").write_text("{")
        result = await LintFileTool(tmp_path).create_invocation({"path": "bad.json"}).execute()
        assert result.success
        assert result.content.startswith("1 problem(s) in bad.json:")
        assert result.metadata["problems"] == 1

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path):
        with pytest.raises(ResourceNotFound):
            await LintFileTool(tmp_path).create_invocation({"path": "none.py"}).execute()


class TestOutline:
    def test_outline_source(self):
        assert outline_source(SAMPLE) == [
            "1: import os",
            "2: from typing import List",
            "5: class Greeter(Base)",
            "6:     def __init__(self, name)",
            "9:     async def greet(self, *args, loud, **kw)",
            "13: def helper(a, b)",
        ]

    @pytest.mark.asyncio
    async def test_tool_outlines_python(self, tmp_path):
        (tmp_path / "mod.py").write_text(SAMPLE)
        result = await CodeOutlineTool(tmp_path).create_invocation({"path": "mod.py"}).execute()
        assert "5: class Greeter(Base)" in result.content
        assert result.metadata["entries"] == 6

    @pytest.mark.asyncio
    async def test_syntax_error_reported_as_content(self, tmp_path):
        (tmp_path / "bad.py").write_text("def (:\n")
        result = await CodeOutlineTool(tmp_path).create_invocation({"path": "bad.py"}).execute()
        assert result.success
        assert "syntax error" in result.content

    @pytest.mark.asyncio
    async def test_non_python_rejected(self, tmp_path):
        (tmp_path / "data.json").write_text("{}")
        with pytest.raises(InvalidParameters):
            await CodeOutlineTool(tmp_path).create_invocation({"path": "data.json"}).execute()
