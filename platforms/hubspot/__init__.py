"""HubSpot CRM integration (private-app token, contacts and deals)."""
