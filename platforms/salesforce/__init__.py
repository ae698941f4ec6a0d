"""Salesforce integration (OAuth2, Contact and Opportunity)."""
