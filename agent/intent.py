"""Heuristic intent pre-classification.

``classify`` is a pure keyword scorer over the user message (plus an
optional memory summary). It never calls a model and never touches the
filesystem; ``detect_project_context`` gathers the one filesystem fact it
needs beforehand.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Tuple, Union

logger = logging.getLogger(__name__)


class IntentLabel(str, Enum):
    CREATE = "CREATE"
    DEBUG = "DEBUG"
    QUESTION = "QUESTION"


@dataclass(frozen=True)
class ProjectContext:
    has_existing_files: bool = False
    memory_summary: str = ""


DEBUG_KEYWORDS = (
    "debug", "fix", "repair", "error", "bug", "issue", "problem",
    "upgrade", "update", "improve", "refactor", "modify", "change",
    "enhance", "optimize", "correct", "resolve", "solve",
)

CREATE_KEYWORDS = (
    "create", "new", "build", "generate", "make", "start", "init",
    "setup", "scaffold", "bootstrap",
)

QUESTION_WORDS = (
    "what", "how", "why", "when", "where", "which", "who", "whom", "whose",
    "can you", "could you", "would you", "should i", "is there", "are there",
    "does", "do", "did", "will", "would", "should", "may", "might",
)

STACK_TRACE_SUBSTRINGS = (
    "exception:", "traceback (most recent call last)",
    "java.lang.", "kotlin.", "org.junit.", "assertionerror",
    "error:", "referenceerror", "typeerror", "syntaxerror",
)

STACK_FRAME_PATTERNS = (
    re.compile(r"\bat [\w$.<>]+\([^)]*\)"),
    re.compile(r'File "[^"]+", line \d+'),
)

PROJECT_CONTEXT_WORDS = ("project", "codebase", "repository")

STACK_TRACE_BONUS = 3

_QUESTION_PATTERNS = [re.compile(r"\b" + re.escape(w) + r"\b") for w in QUESTION_WORDS]


def _word_prefix_pattern(keyword: str) -> re.Pattern:
    return re.compile(r"\b" + re.escape(keyword))


_DEBUG_PATTERNS = [_word_prefix_pattern(k) for k in DEBUG_KEYWORDS]
_CREATE_PATTERNS = [_word_prefix_pattern(k) for k in CREATE_KEYWORDS]


def keyword_score(text: str, patterns: Iterable[re.Pattern]) -> int:
    """Number of distinct keywords present in *text*."""
    return sum(1 for p in patterns if p.search(text))


def has_stack_trace(text: str) -> bool:
    lowered = text.lower()
    if any(s in lowered for s in STACK_TRACE_SUBSTRINGS):
        return True
    return any(p.search(text) for p in STACK_FRAME_PATTERNS)


def classify(message: str, project_context: ProjectContext = ProjectContext()) -> Tuple[IntentLabel, ...]:
    """Classify a request into an ordered, de-duplicated, non-empty label tuple."""
    message = message or ""
    message_lower = message.lower()
    memory_lower = (project_context.memory_summary or "").lower()
    context_lower = f"{message_lower} {memory_lower}"
    has_files = project_context.has_existing_files

    debug_score = keyword_score(context_lower, _DEBUG_PATTERNS)
    create_score = keyword_score(context_lower, _CREATE_PATTERNS)
    question_indicators = keyword_score(message_lower, _QUESTION_PATTERNS)
    ends_with_question_mark = message.strip().endswith("?")

    stack_trace = has_stack_trace(message)
    if stack_trace:
        debug_score += STACK_TRACE_BONUS

    has_project_context = any(w in memory_lower for w in PROJECT_CONTEXT_WORDS)

    labels: List[IntentLabel] = []
    if (ends_with_question_mark or question_indicators > 0) and not stack_trace:
        labels.append(IntentLabel.QUESTION)

    debug_by_context = has_project_context and debug_score >= create_score
    if stack_trace or (has_files and (debug_score > 0 or debug_by_context)):
        labels.append(IntentLabel.DEBUG)

    if create_score > 0 and (not has_files or create_score > debug_score):
        labels.append(IntentLabel.CREATE)

    if not labels:
        labels.append(IntentLabel.DEBUG if has_files else IntentLabel.CREATE)

    result = tuple(dict.fromkeys(labels))
    logger.debug(
        "classify: debug=%s create=%s question=%s stack_trace=%s files=%s -> %s",
        debug_score, create_score, question_indicators, stack_trace, has_files,
        [label.value for label in result],
    )
    return result


def detect_project_context(workspace_root: Union[str, Path], memory_summary: str = "") -> ProjectContext:
    """Check whether *workspace_root* already holds visible files."""
    root = Path(workspace_root)
    has_files = root.is_dir() and any(
        child.is_file() and not child.name.startswith(".") for child in root.iterdir()
    )
    return ProjectContext(has_existing_files=has_files, memory_summary=memory_summary)


_GUIDANCE = {
    IntentLabel.CREATE: "creating a new project: plan the file layout first, then write complete, runnable files",
    IntentLabel.DEBUG: "debugging or upgrading an existing project: read the relevant files before changing them and keep edits minimal",
    IntentLabel.QUESTION: "answering a question: inspect files as needed but do not modify anything",
}


def intent_guidance(labels: Iterable[IntentLabel]) -> str:
    """System guidance text describing the detected task type(s)."""
    lines = ["=== Context & Guidance ==="]
    for label in labels:
        lines.append(f"Task type: {_GUIDANCE[IntentLabel(label)]}.")
    lines.append("Confirm the primary goal and success criteria before finishing.")
    return "\n".join(lines)


def is_question_only(labels: Iterable[IntentLabel]) -> bool:
    return set(labels) == {IntentLabel.QUESTION}
