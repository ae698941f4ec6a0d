"""Trello field mappings: boards become projects, cards become tasks."""
from sync_core.integrations.canonical import EntityType
from sync_core.integrations.mapper import (
    DEFAULT_MAPPINGS,
    PROJECT_STATUSES,
    TASK_STATUSES,
    MappingRule,
    register_transform,
)


def card_status(value) -> str:
    if isinstance(value, bool):
        return "done" if value else "todo"
    key = str(value or "").strip().lower().replace(" ", "_")
    return TASK_STATUSES.get(key, "todo")


def board_status(value) -> str:
    if isinstance(value, bool):
        return "archived" if value else "active"
    key = str(value or "").strip().lower().replace(" ", "_")
    return PROJECT_STATUSES.get(key, "active")


register_transform("trello_card_status", card_status, lambda status: status == "done")
register_transform("trello_board_status", board_status, lambda status: status == "archived")

MAPPINGS = {
    EntityType.PROJECT: DEFAULT_MAPPINGS[EntityType.PROJECT].extend(
        candidates={
            "description": ("desc",),
            "updated_at": ("dateLastActivity",),
        },
        rules=(
            MappingRule("status", ("closed",), transform="trello_board_status"),
        ),
        extensions=(
            MappingRule("url", ("url", "shortUrl"), "str"),
            MappingRule("organization_id", ("idOrganization",), "str"),
        ),
        outbound={
            "name": "name",
            "description": "desc",
            "status": "closed",
        },
    ),
    EntityType.TASK: DEFAULT_MAPPINGS[EntityType.TASK].extend(
        candidates={
            "description": ("desc",),
            "due_date": ("due",),
            "project_id": ("idBoard",),
            "updated_at": ("dateLastActivity",),
        },
        rules=(
            MappingRule("status", ("dueComplete",), transform="trello_card_status"),
        ),
        extensions=(
            MappingRule("list_id", ("idList",), "str"),
            MappingRule("url", ("url", "shortUrl"), "str"),
        ),
        outbound={
            "title": "name",
            "description": "desc",
            "due_date": "due",
            "status": "dueComplete",
            "extensions.list_id": "idList",
        },
    ),
}
