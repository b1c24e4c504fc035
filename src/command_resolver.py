"""Deterministic, pattern-based resolution of free text into Operations."""
from __future__ import annotations

import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from config import ResolverConfig
from logging_utils import logger
from metrics import PipelineMetrics
from models import (
    Ambiguous,
    AppAction,
    AppParams,
    CandidateMatch,
    CommandParams,
    FileAction,
    FileParams,
    NeedsClarification,
    Operation,
    OperationParams,
    OperationType,
    Priority,
    Resolution,
    SettingsAction,
    SettingsParams,
    Unambiguous,
    WebAction,
    WebParams,
)

FALLBACK_QUESTION = "I'm not sure what operation you want to perform. Could you please rephrase your request?"
AMBIGUOUS_QUESTION = "I found multiple possible operations. Which one did you mean?"
TOO_LONG_QUESTION = "That request is too long to interpret. Could you shorten it to a single instruction?"

# Optional polite lead accepted in front of every command.
_LEAD = r"^(?:(?:please|can\s+you|could\s+you|would\s+you)\s+)*"

Groups = Tuple[Optional[str], ...]
ParamBuilder = Callable[[Groups], OperationParams]


@dataclass(frozen=True)
class CommandTemplate:
    """A text-matching rule paired with the Operation it produces."""

    name: str
    pattern: re.Pattern
    operation_type: OperationType
    build_params: ParamBuilder

    @classmethod
    def compile(cls, name: str, body: str, operation_type: OperationType, build_params: ParamBuilder) -> CommandTemplate:
        return cls(name, re.compile(_LEAD + body, re.IGNORECASE), operation_type, build_params)


def normalize_text(text: str) -> str:
    """Trim and collapse whitespace; case is kept so paths and content survive."""
    return re.sub(r"\s+", " ", text or "").strip()


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return value.strip().strip("\"'") or None


def _to_url(raw: Optional[str]) -> str:
    url = _clean(raw) or ""
    return url if re.match(r"https?://", url, re.IGNORECASE) else f"https://{url}"


def _to_int(raw: Optional[str]) -> Optional[int]:
    return int(raw) if raw else None


def _file_transfer(groups: Groups) -> FileParams:
    action = FileAction.MOVE if groups[0].lower() == "move" else FileAction.COPY
    return FileParams(action=action, path=_clean(groups[1]) or "", destination=_clean(groups[2]))


DEFAULT_TEMPLATES: List[CommandTemplate] = [
    # File operations
    CommandTemplate.compile(
        "file_read",
        r"(?:open|read|show)\s+(?:the\s+)?file\s+(.+)$",
        OperationType.FILE_OP,
        lambda g: FileParams(action=FileAction.READ, path=_clean(g[0]) or ""),
    ),
    CommandTemplate.compile(
        "file_write",
        r"(?:create|write)\s+(?:a\s+|the\s+)?file\s+(.+?)\s+with\s+content\s+(.+)$",
        OperationType.FILE_OP,
        lambda g: FileParams(action=FileAction.WRITE, path=_clean(g[0]) or "", content=_clean(g[1])),
    ),
    CommandTemplate.compile(
        "file_delete",
        r"(?:delete|remove)\s+(?:the\s+)?file\s+(.+)$",
        OperationType.FILE_OP,
        lambda g: FileParams(action=FileAction.DELETE, path=_clean(g[0]) or ""),
    ),
    CommandTemplate.compile(
        "file_list",
        r"list\s+(?:all\s+)?(?:the\s+)?files\s+in\s+(.+)$",
        OperationType.FILE_OP,
        lambda g: FileParams(action=FileAction.LIST, path=_clean(g[0]) or ""),
    ),
    CommandTemplate.compile(
        "file_search",
        r"search\s+(?:for\s+)?(.+?)\s+in\s+(?:the\s+)?(?:files\s+(?:in|under)\s+|folder\s+|directory\s+)?(.+)$",
        OperationType.FILE_OP,
        lambda g: FileParams(action=FileAction.SEARCH, path=_clean(g[1]) or "", pattern=_clean(g[0]), recursive=True),
    ),
    CommandTemplate.compile(
        "file_transfer",
        r"(move|copy)\s+(?:the\s+)?file\s+(.+?)\s+to\s+(.+)$",
        OperationType.FILE_OP,
        _file_transfer,
    ),
    # Web navigation
    CommandTemplate.compile(
        "web_navigate",
        r"(?:go\s+to|open|navigate\s+to|visit)\s+(?:the\s+)?(?:website\s+|url\s+|site\s+)?"
        r"((?:https?://)?[\w-]+(?:\.[\w-]+)*\.[a-z]{2,}(?::\d+)?(?:/\S*)?)$",
        OperationType.WEB_NAV,
        lambda g: WebParams(action=WebAction.NAVIGATE, url=_to_url(g[0])),
    ),
    CommandTemplate.compile(
        "web_click",
        r"click\s+(?:on\s+)?(?:the\s+)?(.+?)(?:\s+at\s+(\d+)\s*,\s*(\d+))?$",
        OperationType.WEB_NAV,
        lambda g: WebParams(action=WebAction.CLICK, selector=_clean(g[0]), x=_to_int(g[1]), y=_to_int(g[2])),
    ),
    CommandTemplate.compile(
        "web_type",
        r"type\s+(.+?)\s+into\s+(?:the\s+)?(.+)$",
        OperationType.WEB_NAV,
        lambda g: WebParams(action=WebAction.TYPE, text=_clean(g[0]), selector=_clean(g[1])),
    ),
    CommandTemplate.compile(
        "web_screenshot",
        r"take\s+(?:a\s+)?screenshot(?:\s+(?:as|to)\s+(.+))?$",
        OperationType.WEB_NAV,
        lambda g: WebParams(action=WebAction.SCREENSHOT, path=_clean(g[0])),
    ),
    # App control
    CommandTemplate.compile(
        "app_launch",
        r"(?:open|launch|start)\s+(?:the\s+)?(?:app\s+|application\s+|program\s+)?"
        r"(?!(?:the\s+)?(?:file|website|url|site|setting)\b)(\S.*)$",
        OperationType.APP_CONTROL,
        lambda g: AppParams(action=AppAction.LAUNCH, app_name=_clean(g[0]) or ""),
    ),
    CommandTemplate.compile(
        "app_close",
        r"(?:close|exit|quit)\s+(?:the\s+)?(?:app\s+|application\s+|program\s+)?(\S.*)$",
        OperationType.APP_CONTROL,
        lambda g: AppParams(action=AppAction.CLOSE, app_name=_clean(g[0]) or ""),
    ),
    # System settings
    CommandTemplate.compile(
        "settings_get",
        r"(?:get|show|check)\s+(?:the\s+)?(?:system\s+)?setting\s+(.+)$",
        OperationType.SYSTEM_SETTINGS,
        lambda g: SettingsParams(action=SettingsAction.GET, setting=_clean(g[0]) or ""),
    ),
    CommandTemplate.compile(
        "settings_set",
        r"(?:set|change)\s+(?:the\s+)?(?:system\s+)?setting\s+(.+?)\s+to\s+(.+)$",
        OperationType.SYSTEM_SETTINGS,
        lambda g: SettingsParams(action=SettingsAction.SET, setting=_clean(g[0]) or "", value=_clean(g[1])),
    ),
    # Command execution
    CommandTemplate.compile(
        "command_exec",
        r"(?:run|execute)\s+(?:the\s+)?command\s+(.+)$",
        OperationType.COMMAND_EXEC,
        lambda g: CommandParams(command=g[0].strip()),
    ),
]


class CommandResolver:
    """Turns raw text into zero, one, or many candidate Operations."""

    def __init__(self, templates: Optional[List[CommandTemplate]] = None, config: Optional[ResolverConfig] = None) -> None:
        self._templates: List[CommandTemplate] = list(DEFAULT_TEMPLATES if templates is None else templates)
        self.config = config or ResolverConfig()

    @property
    def templates(self) -> Tuple[CommandTemplate, ...]:
        return tuple(self._templates)

    def add_template(self, template: CommandTemplate) -> None:
        """Register a template at runtime; it is matched after every existing one."""
        self._templates.append(template)
        logger.debug("Template registered", extra={"extra": {"template": template.name, "type": template.operation_type.value}})

    def find_matches(self, text: str) -> List[Tuple[CommandTemplate, re.Match]]:
        normalized = normalize_text(text)
        matches = []
        for template in self._templates:
            match = template.pattern.search(normalized)
            if match:
                matches.append((template, match))
        return matches

    def confidence_for(self, match: re.Match) -> float:
        if all(match.groups()):
            return self.config.high_confidence
        return self.config.partial_confidence

    def build_candidate(
        self, template: CommandTemplate, match: re.Match, context: Optional[Mapping[str, Any]] = None
    ) -> CandidateMatch:
        context = context or {}
        operation = Operation.create(
            template.operation_type,
            template.build_params(match.groups()),
            principal_id=context.get("principal_id"),
            priority=Priority(context.get("priority", Priority.MEDIUM)),
        )
        return CandidateMatch(
            operation=operation,
            confidence=self.confidence_for(match),
            span=match.group(0),
            template=template.name,
        )

    def best_match(self, text: str, context: Optional[Mapping[str, Any]] = None) -> Optional[CandidateMatch]:
        """First match in registration order, for callers that want a single winner."""
        matches = self.find_matches(text)
        if not matches:
            return None
        template, match = matches[0]
        return self.build_candidate(template, match, context)

    def resolve(
        self,
        text: str,
        context: Optional[Mapping[str, Any]] = None,
        metrics: Optional[PipelineMetrics] = None,
    ) -> Resolution:
        """
        Resolve ``text`` into a clarification request, one Operation, or alternatives.

        ``context`` may carry ``principal_id`` and ``priority`` for the created Operations.
        """
        start = time.time()
        correlation_id = metrics.correlation_id if metrics else None

        if len(text or "") > self.config.max_text_length:
            logger.warning(
                "Request exceeds maximum length",
                extra={"extra": {"correlation_id": correlation_id, "length": len(text)}},
            )
            resolution: Resolution = NeedsClarification(question=TOO_LONG_QUESTION)
        else:
            matches = self.find_matches(text)
            logger.debug(
                "Template matches",
                extra={"extra": {"correlation_id": correlation_id, "templates": [t.name for t, _ in matches]}},
            )
            if not matches:
                logger.info("No matching command template", extra={"extra": {"correlation_id": correlation_id, "text": text[:100]}})
                resolution = NeedsClarification(question=FALLBACK_QUESTION)
            elif len(matches) > 1:
                candidates = [self.build_candidate(t, m, context) for t, m in matches]
                for candidate in candidates:
                    candidate.confidence = self.config.ambiguous_confidence
                logger.info(
                    "Multiple command templates matched",
                    extra={"extra": {"correlation_id": correlation_id, "templates": [c.template for c in candidates]}},
                )
                resolution = Ambiguous(
                    candidates=candidates, question=AMBIGUOUS_QUESTION, confidence=self.config.ambiguous_confidence
                )
            else:
                candidate = self.build_candidate(*matches[0], context)
                resolution = Unambiguous(operation=candidate.operation, confidence=candidate.confidence, match=candidate)

        if metrics:
            metrics.resolution = type(resolution).__name__
            metrics.confidence = resolution.confidence
            metrics.resolve_latency_ms = int((time.time() - start) * 1000)
        return resolution


def describe_resolution(resolution: Resolution) -> Dict[str, Any]:
    """JSON-friendly view of a resolution for CLI output and logs."""
    if isinstance(resolution, Unambiguous):
        return {"kind": "unambiguous", "confidence": resolution.confidence, "operation": resolution.operation.to_dict()}
    if isinstance(resolution, Ambiguous):
        return {
            "kind": "ambiguous",
            "confidence": resolution.confidence,
            "question": resolution.question,
            "alternatives": [op.to_dict() for op in resolution.alternatives],
        }
    return {"kind": "needs_clarification", "confidence": resolution.confidence, "question": resolution.question}
