"""Field checks for the admin course and video forms."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence

from .api import AcademyError


MAX_TAGS = 3


class FormValidationError(AcademyError):
    """One or more form fields are missing or malformed."""

    def __init__(self, errors: Mapping[str, str]) -> None:
        self.errors: Dict[str, str] = dict(errors)
        summary = "; ".join(self.errors.values()) or "Invalid form"
        super().__init__(f"Please fix the following errors: {summary}")


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def parse_tags(raw: str) -> List[str]:
    return [tag.strip() for tag in (raw or "").split(",") if tag.strip()]


def parse_tags_on_blur(raw: str) -> List[str]:
    """Split a comma separated tag field, keeping only the first three tags."""

    return parse_tags(raw)[:MAX_TAGS]


def format_tags(tags: Sequence[str]) -> str:
    return ", ".join(tags)


def _check_price(value: Any, errors: Dict[str, str]) -> None:
    if _blank(value):
        return
    try:
        price = float(value)
    except (TypeError, ValueError):
        errors["price"] = "Price must be a number"
        return
    if price < 0:
        errors["price"] = "Price must be a positive number"


def validate_course_form(fields: Mapping[str, Any], *, require_thumbnail: bool = False) -> Dict[str, str]:
    """Return ``field -> message`` for every problem in a course form."""

    errors: Dict[str, str] = {}
    if _blank(fields.get("title")):
        errors["title"] = "Course title is required"
    if _blank(fields.get("description")):
        errors["description"] = "Course description is required"
    _check_price(fields.get("price"), errors)
    if _blank(fields.get("category")):
        errors["category"] = "Course category is required"
    if _blank(fields.get("level")):
        errors["level"] = "Course level is required"
    tags = fields.get("tags")
    if tags is not None:
        if isinstance(tags, str):
            tags = parse_tags(tags)
        if not isinstance(tags, (list, tuple)) or not all(isinstance(tag, str) for tag in tags):
            errors["tags"] = "Tags must be a list of strings"
        elif len(tags) > MAX_TAGS:
            errors["tags"] = f"At most {MAX_TAGS} tags are allowed"
    if fields.get("hasWhatsappGroup") and _blank(fields.get("whatsappGroupLink")):
        errors["whatsappGroupLink"] = "WhatsApp group link is required"
    if require_thumbnail and not fields.get("thumbnail"):
        errors["thumbnail"] = "Course thumbnail is required"
    return errors


def validate_video_form(fields: Mapping[str, Any], *, require_file: bool = True) -> Dict[str, str]:
    errors: Dict[str, str] = {}
    if _blank(fields.get("title")):
        errors["title"] = "Title is required"
    if require_file and not fields.get("file"):
        errors["file"] = "Video file is required"
    order = fields.get("order")
    if not _blank(order):
        try:
            if int(order) < 1:
                errors["order"] = "Order must be 1 or greater"
        except (TypeError, ValueError):
            errors["order"] = "Order must be a whole number"
    return errors


def ensure_valid(errors: Mapping[str, str]) -> None:
    if errors:
        raise FormValidationError(errors)


def clean_course_fields(fields: Mapping[str, Any]) -> Dict[str, Any]:
    """Return a backend-ready copy of a validated course form."""

    cleaned: Dict[str, Any] = {}
    for key, value in fields.items():
        if key == "thumbnail":
            continue
        if isinstance(value, str):
            value = value.strip()
        cleaned[key] = value
    if "price" in cleaned and not _blank(cleaned["price"]):
        cleaned["price"] = float(cleaned["price"])
    tags: Optional[Any] = cleaned.get("tags")
    if isinstance(tags, str):
        cleaned["tags"] = parse_tags_on_blur(tags)
    return cleaned


__all__ = [
    "FormValidationError",
    "MAX_TAGS",
    "clean_course_fields",
    "ensure_valid",
    "format_tags",
    "parse_tags",
    "parse_tags_on_blur",
    "validate_course_form",
    "validate_video_form",
]
