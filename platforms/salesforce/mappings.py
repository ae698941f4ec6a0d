"""Salesforce field mappings.

Clients live in Contact, invoices in Opportunity (with the custom
Invoice_Number__c field). Opportunity stages are translated to and from
the invoice status vocabulary.
"""
from sync_core.integrations.canonical import EntityType
from sync_core.integrations.mapper import (
    DEFAULT_MAPPINGS,
    INVOICE_STATUSES,
    MappingRule,
    register_transform,
)

STAGES = {
    "prospecting": "draft",
    "qualification": "draft",
    "proposal/price quote": "sent",
    "negotiation/review": "sent",
    "closed won": "paid",
    "closed lost": "cancelled",
}

STAGE_FOR_STATUS = {
    "draft": "Prospecting",
    "pending": "Qualification",
    "sent": "Proposal/Price Quote",
    "overdue": "Negotiation/Review",
    "paid": "Closed Won",
    "cancelled": "Closed Lost",
}


def stage_to_status(value) -> str:
    if not value:
        return "draft"
    key = str(value).strip().lower()
    return INVOICE_STATUSES.get(key) or STAGES.get(key, "draft")


def status_to_stage(value) -> str:
    return STAGE_FOR_STATUS.get(str(value), "Prospecting")


register_transform("salesforce_stage", stage_to_status, status_to_stage)

SOBJECTS = {
    EntityType.CLIENT: "Contact",
    EntityType.INVOICE: "Opportunity",
}

FIELDS = {
    EntityType.CLIENT: (
        "Id", "FirstName", "LastName", "Name", "Email", "Phone", "MobilePhone",
        "Account.Name", "MailingStreet", "MailingCity", "MailingState",
        "MailingPostalCode", "MailingCountry", "Description", "Tax_ID__c",
        "CreatedDate", "LastModifiedDate",
    ),
    EntityType.INVOICE: (
        "Id", "Name", "Invoice_Number__c", "Amount", "CurrencyIsoCode", "StageName",
        "CloseDate", "Invoice_Date__c", "Description", "Account.Name",
        "CreatedDate", "LastModifiedDate",
    ),
}

MAPPINGS = {
    EntityType.CLIENT: DEFAULT_MAPPINGS[EntityType.CLIENT].extend(
        candidates={
            "name": ("Name",),
            "email": ("Email",),
            "phone": ("Phone", "MobilePhone"),
            "company": ("Account.Name",),
            "notes": ("Description",),
            "external_id": ("Id",),
            "created_at": ("CreatedDate",),
            "updated_at": ("LastModifiedDate",),
        },
        rules=(
            MappingRule(
                "address",
                ("address",),
                parts=(
                    ("MailingStreet",),
                    ("MailingCity",),
                    ("MailingState",),
                    ("MailingPostalCode",),
                    ("MailingCountry",),
                ),
            ),
        ),
        extensions=(
            MappingRule("vat_number", ("Tax_ID__c",), "str"),
        ),
        outbound={
            "name": "LastName",
            "email": "Email",
            "phone": "Phone",
            "notes": "Description",
            "extensions.vat_number": "Tax_ID__c",
        },
    ),
    EntityType.INVOICE: DEFAULT_MAPPINGS[EntityType.INVOICE].extend(
        candidates={
            "invoice_number": ("Invoice_Number__c",),
            "client_name": ("Account.Name",),
            "amount": ("Amount",),
            "currency": ("CurrencyIsoCode",),
            "due_date": ("CloseDate",),
            "issue_date": ("Invoice_Date__c",),
            "description": ("Description",),
            "external_id": ("Id",),
            "created_at": ("CreatedDate",),
            "updated_at": ("LastModifiedDate",),
        },
        rules=(
            MappingRule("status", ("StageName",), transform="salesforce_stage"),
        ),
        outbound={
            "invoice_number": "Invoice_Number__c",
            "amount": "Amount",
            "currency": "CurrencyIsoCode",
            "status": "StageName",
            "due_date": "CloseDate",
            "issue_date": "Invoice_Date__c",
            "description": "Description",
        },
    ),
}
