"""HubSpot CRM v3 field mappings.

Contacts become clients, deals become invoices. CRM objects nest their
fields under `properties`; `id` and `updatedAt` sit at the top level.
"""
from sync_core.integrations.canonical import EntityType
from sync_core.integrations.mapper import (
    DEFAULT_MAPPINGS,
    INVOICE_STATUSES,
    MappingRule,
    register_transform,
)

DEAL_STAGES = {
    "appointmentscheduled": "draft",
    "qualifiedtobuy": "draft",
    "presentationscheduled": "sent",
    "decisionmakerboughtin": "sent",
    "contractsent": "sent",
    "closedwon": "paid",
    "closedlost": "cancelled",
}

STAGE_FOR_STATUS = {
    "draft": "appointmentscheduled",
    "pending": "qualifiedtobuy",
    "sent": "contractsent",
    "overdue": "contractsent",
    "paid": "closedwon",
    "cancelled": "closedlost",
}


def deal_stage_to_status(value) -> str:
    if not value:
        return "draft"
    key = str(value).strip().lower()
    return INVOICE_STATUSES.get(key) or DEAL_STAGES.get(key, "draft")


def status_to_deal_stage(value) -> str:
    return STAGE_FOR_STATUS.get(str(value), "appointmentscheduled")


register_transform("hubspot_deal_stage", deal_stage_to_status, status_to_deal_stage)

CONTACT_PROPERTIES = (
    "firstname", "lastname", "email", "phone", "company", "website",
    "address", "city", "state", "zip", "country", "hubspot_owner_id", "lifecyclestage",
    "lastmodifieddate", "createdate",
)
DEAL_PROPERTIES = (
    "dealname", "invoice_number", "amount", "deal_currency_code", "dealstage",
    "closedate", "description", "pipeline", "lastmodifieddate", "createdate",
)

OBJECT_TYPES = {
    EntityType.CLIENT: "contacts",
    EntityType.INVOICE: "deals",
}

PROPERTIES = {
    EntityType.CLIENT: CONTACT_PROPERTIES,
    EntityType.INVOICE: DEAL_PROPERTIES,
}

MAPPINGS = {
    EntityType.CLIENT: DEFAULT_MAPPINGS[EntityType.CLIENT].extend(
        candidates={
            "email": ("properties.email",),
            "phone": ("properties.phone", "properties.mobilephone"),
            "company": ("properties.company",),
            "website": ("properties.website",),
            "created_at": ("properties.createdate",),
            "updated_at": ("properties.lastmodifieddate",),
        },
        rules=(
            MappingRule(
                "name",
                parts=(("properties.firstname",), ("properties.lastname",)),
                joiner=" ",
                transform="str",
            ),
            MappingRule(
                "address",
                ("address",),
                parts=(
                    ("properties.address",),
                    ("properties.city",),
                    ("properties.state",),
                    ("properties.zip",),
                    ("properties.country",),
                ),
            ),
        ),
        extensions=(
            MappingRule("hubspot_owner_id", ("properties.hubspot_owner_id",), "str"),
            MappingRule("lifecycle_stage", ("properties.lifecyclestage",), "str"),
        ),
        outbound={
            "name": "properties.firstname",
            "email": "properties.email",
            "phone": "properties.phone",
            "company": "properties.company",
            "website": "properties.website",
        },
    ),
    EntityType.INVOICE: DEFAULT_MAPPINGS[EntityType.INVOICE].extend(
        candidates={
            "invoice_number": ("properties.invoice_number", "properties.dealname"),
            "amount": ("properties.amount",),
            "currency": ("properties.deal_currency_code",),
            "due_date": ("properties.closedate",),
            "description": ("properties.description",),
            "created_at": ("properties.createdate",),
            "updated_at": ("properties.lastmodifieddate",),
        },
        rules=(
            MappingRule(
                "status",
                ("properties.dealstage",),
                transform="hubspot_deal_stage",
            ),
        ),
        extensions=(
            MappingRule("pipeline", ("properties.pipeline",), "str"),
        ),
        outbound={
            "invoice_number": "properties.invoice_number",
            "amount": "properties.amount",
            "currency": "properties.deal_currency_code",
            "status": "properties.dealstage",
            "due_date": "properties.closedate",
            "description": "properties.description",
        },
    ),
}
