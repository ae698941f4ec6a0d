"""Trello integration (key + member token, boards and cards)."""
