"""Prompt catalog.

Templates are read once from a YAML file shaped like::

    prompts:
      personal_reply:
        default:
          system: ...
          user: ...

and are immutable afterwards; building a new catalog is the only way to
pick up edits. Rendering is best-effort: a ``{placeholder}`` with no value
in the context is left verbatim so a misconfigured template shows up in
the output instead of silently losing text.
"""

import json
import re
from collections.abc import Iterable, Mapping
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any

import yaml
from pydantic import BaseModel, ValidationError

from sentio.core.errors import PromptCatalogError, PromptNotFoundError
from sentio.core.logging import get_logger
from sentio.domain.models import PromptCategory, PromptTemplate, RenderedPrompt

logger = get_logger(__name__)

DEFAULT_VARIANT = "default"

_PLACEHOLDER = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")


def _json_default(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, datetime | date):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, set | frozenset):
        return sorted(value, key=str)
    return str(value)


def to_prompt_text(value: Any) -> str:
    """Text form of a context value.

    Strings and numbers are used as-is; structured values (mappings,
    sequences, models, dates) become canonical JSON with sorted keys.
    """
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, bool | int | float):
        return str(value)
    if isinstance(value, datetime | date):
        return value.isoformat()
    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json")
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=_json_default)


def substitute(template: str, context: Mapping[str, Any]) -> str:
    """Replace ``{name}`` tokens found in ``context`` in a single pass."""

    def replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in context:
            return match.group(0)
        return to_prompt_text(context[name])

    return _PLACEHOLDER.sub(replace, template)


def placeholders(template: str) -> set[str]:
    return set(_PLACEHOLDER.findall(template))


def _key(category: PromptCategory | str) -> str:
    return category.value if isinstance(category, PromptCategory) else str(category)


class PromptCatalog:
    """Named instruction/user-turn template pairs keyed by (category, variant)."""

    def __init__(self, templates: Iterable[PromptTemplate]) -> None:
        table: dict[str, dict[str, PromptTemplate]] = {}
        for template in templates:
            table.setdefault(template.category, {})[template.variant] = template
        self._templates = MappingProxyType({k: MappingProxyType(v) for k, v in table.items()})

    @classmethod
    def from_mapping(
        cls,
        data: Mapping[str, Any],
        required: Iterable[PromptCategory | str] = (),
    ) -> "PromptCatalog":
        """Build a catalog from parsed definitions.

        Raises:
            PromptCatalogError: If the definitions are malformed or a
                required category has no ``default`` variant
        """
        prompts = data.get("prompts") if isinstance(data, Mapping) else None
        if not isinstance(prompts, Mapping):
            raise PromptCatalogError(
                "Prompt definitions must have a top-level 'prompts' mapping",
                details={"source": "prompt_catalog", "operation": "load"},
            )

        templates: list[PromptTemplate] = []
        for category, variants in prompts.items():
            if not isinstance(variants, Mapping):
                raise PromptCatalogError(
                    f"Prompt category '{category}' must map variants to templates",
                    details={"source": "prompt_catalog", "operation": "load"},
                )
            for variant, body in variants.items():
                try:
                    templates.append(
                        PromptTemplate.model_validate(
                            {"category": str(category), "variant": str(variant), **(body or {})}
                        )
                    )
                except (ValidationError, TypeError) as e:
                    raise PromptCatalogError(
                        f"Prompt '{category}.{variant}' needs string 'system' and 'user' entries",
                        details={"source": "prompt_catalog", "operation": "load"},
                    ) from e

        catalog = cls(templates)
        missing = [_key(c) for c in required if not catalog.has(c, DEFAULT_VARIANT)]
        if missing:
            raise PromptCatalogError(
                f"Missing required prompt(s): {', '.join(f'{c}.{DEFAULT_VARIANT}' for c in missing)}",
                details={"source": "prompt_catalog", "operation": "load"},
            )
        return catalog

    @classmethod
    def load(cls, path: Path | str, required: Iterable[PromptCategory | str] = ()) -> "PromptCatalog":
        """Read and validate the YAML definitions file.

        Raises:
            PromptCatalogError: If the file is missing, unparseable or incomplete
        """
        path = Path(path)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except OSError as e:
            raise PromptCatalogError(
                f"Cannot read prompt definitions at {path}",
                details={"source": "prompt_catalog", "operation": "load"},
            ) from e
        except yaml.YAMLError as e:
            raise PromptCatalogError(
                f"Prompt definitions at {path} are not valid YAML",
                details={"source": "prompt_catalog", "operation": "load"},
            ) from e

        catalog = cls.from_mapping(data or {}, required=required)
        logger.info(
            "Prompt catalog loaded",
            path=str(path),
            categories=len(catalog.categories()),
            templates=sum(len(catalog.variants(c)) for c in catalog.categories()),
        )
        return catalog

    def categories(self) -> list[str]:
        return sorted(self._templates)

    def variants(self, category: PromptCategory | str) -> list[str]:
        return sorted(self._templates.get(_key(category), {}))

    def has(self, category: PromptCategory | str, variant: str = DEFAULT_VARIANT) -> bool:
        return variant in self._templates.get(_key(category), {})

    def get(self, category: PromptCategory | str, variant: str = DEFAULT_VARIANT) -> PromptTemplate:
        """Raises: PromptNotFoundError"""
        try:
            return self._templates[_key(category)][variant]
        except KeyError:
            raise PromptNotFoundError(_key(category), variant) from None

    def render(
        self,
        category: PromptCategory | str,
        variant: str = DEFAULT_VARIANT,
        context: Mapping[str, Any] | None = None,
    ) -> RenderedPrompt:
        """Fill a template pair from ``context``.

        Raises:
            PromptNotFoundError: If no template is registered under the key
        """
        template = self.get(category, variant)
        context = context or {}
        rendered = RenderedPrompt(
            category=template.category,
            variant=template.variant,
            instruction=substitute(template.system, context),
            turn=substitute(template.user, context),
        )

        unresolved = (placeholders(template.system) | placeholders(template.user)) - set(context)
        if unresolved:
            logger.warning(
                "Prompt rendered with unresolved placeholders",
                category=template.category,
                variant=template.variant,
                placeholders=sorted(unresolved),
            )
        return rendered
