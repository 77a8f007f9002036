"""
Code Analysis - quality pass over generated files

The model reviews code files and answers with JSON; when that fails for any
reason a deterministic static analysis is used instead. Only findings marked
fixable are applied by auto_fix_issues.
"""

import json
import re
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError

from appforge.core.exceptions import AIServiceError
from appforge.core.logging_config import logger
from appforge.utils.llm_client import LLMClient


CODE_FILE_RE = re.compile(r"\.(tsx?|jsx?|css|scss)$")
_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")
_CONSOLE_LOG_START_RE = re.compile(r"^[ \t]*console\.log\(", re.MULTILINE)
_STATEMENT_END_RE = re.compile(r";?[ \t]*(?:\n|$)")
_IMG_WITHOUT_ALT_RE = re.compile(r"<img\b(?![^>]*\balt=)([^>]*?)(\s*/?)>")


class CodeIssue(BaseModel):
    type: Literal["performance", "security", "accessibility", "best-practice"]
    severity: Literal["low", "medium", "high"]
    file: str
    line: Optional[int] = None
    message: str
    suggestion: str
    fixable: bool = False


class DependencyRecommendation(BaseModel):
    action: Literal["add", "remove", "upgrade", "replace"]
    package: str
    version: Optional[str] = None
    reason: str
    alternative: Optional[str] = None


class CodeAnalysis(BaseModel):
    issues: List[CodeIssue] = Field(default_factory=list)
    dependencies: List[DependencyRecommendation] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)
    score: int = 100


ANALYSIS_PROMPT = """You are a senior code reviewer. Analyze the following code files for:
1. Performance issues (unnecessary re-renders, inefficient algorithms, large bundles)
2. Security vulnerabilities (XSS, unsafe patterns, exposed secrets)
3. Accessibility problems (missing alt text, keyboard navigation, screen readers)
4. Best practices (code organization, naming, React patterns)
5. Missing or outdated dependencies

FILES TO ANALYZE:
{files}

Respond with ONLY a JSON object of this shape:
{{
  "issues": [{{"type": "performance|security|accessibility|best-practice",
              "severity": "low|medium|high", "file": "path", "line": 1,
              "message": "...", "suggestion": "...", "fixable": false}}],
  "dependencies": [{{"action": "add|remove|upgrade|replace", "package": "name",
                    "version": "^1.0.0", "reason": "...", "alternative": "name"}}],
  "suggestions": ["..."],
  "score": 0
}}"""


def static_code_analysis(files: Dict[str, str]) -> CodeAnalysis:
    """Rule-based fallback used when the model analysis is unavailable"""
    issues: List[CodeIssue] = []
    dependencies: List[DependencyRecommendation] = []
    suggestions: List[str] = []

    for path, content in files.items():
        if "console.log" in content:
            issues.append(CodeIssue(
                type="best-practice",
                severity="low",
                file=path,
                message="Console.log statements found",
                suggestion="Remove console.log statements before production",
                fixable=True,
            ))

        if "dangerouslySetInnerHTML" in content:
            issues.append(CodeIssue(
                type="security",
                severity="high",
                file=path,
                message="Potential XSS vulnerability",
                suggestion="Sanitize HTML content or use safer alternatives",
                fixable=False,
            ))

        if "<img" in content and "alt=" not in content:
            issues.append(CodeIssue(
                type="accessibility",
                severity="medium",
                file=path,
                message="Images missing alt text",
                suggestion="Add alt attributes to all images for screen readers",
                fixable=True,
            ))

        if "import" in content and "date-fns" in content:
            dependencies.append(DependencyRecommendation(
                action="add",
                package="date-fns",
                version="^2.29.0",
                reason="Date manipulation library detected in imports",
            ))

        if "moment" in content:
            dependencies.append(DependencyRecommendation(
                action="replace",
                package="moment",
                reason="Moment.js is deprecated and has large bundle size",
                alternative="date-fns",
            ))

    if any("components/" in path for path in files):
        suggestions.append("Consider adding PropTypes or TypeScript interfaces for better type safety")

    return CodeAnalysis(
        issues=issues,
        dependencies=dependencies,
        suggestions=suggestions,
        score=max(0, 100 - len(issues) * 10),
    )


def parse_analysis(text: str) -> CodeAnalysis:
    """Extract and validate the JSON object of a model answer"""
    match = _JSON_OBJECT_RE.search(text or "")
    if not match:
        raise ValueError("No valid JSON found in analysis response")
    data = json.loads(match.group(0))
    for key in ("issues", "dependencies", "suggestions"):
        if key not in data:
            raise ValueError(f"Analysis response is missing '{key}'")
    return CodeAnalysis.model_validate(data)


async def analyze_code(files: Dict[str, str], llm: Optional[LLMClient]) -> CodeAnalysis:
    """
    Review code files with the model, falling back to static analysis.

    Non-code files (assets, docs, prisma schemas) are not sent for review.
    """
    code_files = {path: content for path, content in files.items() if CODE_FILE_RE.search(path)}
    if not code_files:
        return CodeAnalysis()

    if llm is None:
        return static_code_analysis(files)

    prompt = ANALYSIS_PROMPT.format(
        files="\n".join(f"\n=== {path} ===\n{content}\n" for path, content in code_files.items())
    )
    try:
        return parse_analysis(await llm.complete(prompt))
    except (AIServiceError, ValueError, ValidationError) as e:
        logger.warning(f"[CodeAnalysis] Model analysis failed, using static rules: {e}")
        return static_code_analysis(files)


def _call_end(text: str, pos: int) -> int:
    """
    Index just past the parenthesis closing a call whose arguments start at
    `pos`, or -1 when the call is never closed. Parentheses inside string
    and template literals are ignored.
    """
    depth = 1
    quote = None
    i = pos
    while i < len(text):
        ch = text[i]
        if quote:
            if ch == "\\":
                i += 1
            elif ch == quote:
                quote = None
        elif ch in "\"'`":
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                return i + 1
        i += 1
    return -1


def strip_console_logs(content: str) -> str:
    """
    Remove console.log calls that are whole statements on their own lines.
    Calls embedded in other expressions, or that cannot be matched to their
    closing parenthesis, are kept as they are.
    """
    kept = []
    pos = 0
    for match in _CONSOLE_LOG_START_RE.finditer(content):
        if match.start() < pos:
            continue
        end = _call_end(content, match.end())
        if end < 0:
            continue
        statement_end = _STATEMENT_END_RE.match(content, end)
        if statement_end is None:
            continue
        kept.append(content[pos:match.start()])
        pos = statement_end.end()
    kept.append(content[pos:])
    return "".join(kept)


def auto_fix_issues(files: Dict[str, str], issues: List[CodeIssue]) -> Dict[str, str]:
    """Apply fixable findings; returns a new map and leaves `files` untouched"""
    fixed = dict(files)

    for issue in issues:
        if not issue.fixable:
            continue
        content = fixed.get(issue.file)
        if not content:
            continue

        new_content = content
        if issue.type == "best-practice" and "Console.log" in issue.message:
            new_content = strip_console_logs(new_content)
        elif issue.type == "accessibility" and "alt text" in issue.message:
            new_content = _IMG_WITHOUT_ALT_RE.sub(r'<img\1 alt="Generated image"\2>', new_content)

        if new_content != content:
            fixed[issue.file] = new_content

    return fixed
