"""
Downstream model selection.

Precedence:
  1. any image produced by extraction  -> vision model
  2. taskType "daily"                  -> general model
  3. taskType "coding"                 -> code model
  4. coding keyword in the text        -> code model, else general model

``select_model`` has no side effects and reads no configuration except through
the catalog it is given.
"""

import re
from dataclasses import dataclass
from typing import Optional, Union

from auraiq import config
from auraiq.models.chat import TaskType

CODING_KEYWORDS = (
    "code",
    "python",
    "javascript",
    "error",
    "debug",
    "react",
    "typescript",
    "java",
    "c++",
)

# Lookarounds instead of \b so that keywords ending in symbols ("c++") still
# only match as whole words.
_CODING_KEYWORD_RE = re.compile(
    "|".join(rf"(?<!\w){re.escape(keyword)}(?!\w)" for keyword in CODING_KEYWORDS),
    re.IGNORECASE,
)


@dataclass(frozen=True)
class ModelCatalog:
    vision: str
    general: str
    code: str


DEFAULT_CATALOG = ModelCatalog(
    vision=config.VISION_MODEL,
    general=config.GENERAL_MODEL,
    code=config.CODE_MODEL,
)


def mentions_code(text: str) -> bool:
    return bool(text) and _CODING_KEYWORD_RE.search(text) is not None


def _coerce_task_type(task_type: Union[TaskType, str, None]) -> Optional[TaskType]:
    if isinstance(task_type, TaskType):
        return task_type
    if not task_type:
        return None
    try:
        return TaskType(task_type.lower())
    except ValueError:
        return None


def select_model(
    has_image: bool,
    task_type: Union[TaskType, str, None],
    text: str,
    catalog: ModelCatalog = DEFAULT_CATALOG,
) -> str:
    """Return the model id for one request."""
    if has_image:
        return catalog.vision

    task = _coerce_task_type(task_type)
    if task == TaskType.DAILY:
        return catalog.general
    if task == TaskType.CODING:
        return catalog.code

    return catalog.code if mentions_code(text) else catalog.general
