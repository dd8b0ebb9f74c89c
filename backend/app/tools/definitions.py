"""Anthropic tool schemas for the real (side-effecting) tools.

Phase modules pick from these and add their own submit_* output tool.
"""

from __future__ import annotations

from typing import Any

SEARCH_BUILDING_CODES: dict[str, Any] = {
    "name": "search_building_codes",
    "description": "Search national building codes (NEC, IRC, IBC) for a specific topic.",
    "input_schema": {
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "Search query for national building codes"},
        },
        "required": ["query"],
    },
}

SEARCH_LOCAL_CODES: dict[str, Any] = {
    "name": "search_local_codes",
    "description": "Search local building codes and permit rules for a specific city and state.",
    "input_schema": {
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "The specific code question"},
            "city": {"type": "string", "description": "City name"},
            "state": {"type": "string", "description": "State name or abbreviation"},
        },
        "required": ["query", "city", "state"],
    },
}

WEB_SEARCH: dict[str, Any] = {
    "name": "web_search",
    "description": "Search the web for techniques, product specs, best practices or safety information.",
    "input_schema": {
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "The search query"},
        },
        "required": ["query"],
    },
}

WEB_FETCH: dict[str, Any] = {
    "name": "web_fetch",
    "description": "Fetch and read the text content of a specific web page.",
    "input_schema": {
        "type": "object",
        "properties": {
            "url": {"type": "string", "description": "The URL to fetch"},
        },
        "required": ["url"],
    },
}

SEARCH_PROJECT_VIDEOS: dict[str, Any] = {
    "name": "search_project_videos",
    "description": "Search for DIY tutorial videos related to the project.",
    "input_schema": {
        "type": "object",
        "properties": {
            "project_query": {"type": "string", "description": "The DIY project to search videos for"},
            "max_results": {"type": "number", "description": "Max results (default 5)"},
        },
        "required": ["project_query"],
    },
}

CALCULATE_WIRE_SIZE: dict[str, Any] = {
    "name": "calculate_wire_size",
    "description": (
        "Calculate the copper wire gauge (AWG) for a circuit from its amperage and run "
        "length, accounting for NEC ampacity and a 3% voltage-drop limit."
    ),
    "input_schema": {
        "type": "object",
        "properties": {
            "amperage": {"type": "number", "description": "Circuit amperage"},
            "distance": {"type": "number", "description": "One-way run length in feet"},
            "voltage": {"type": "number", "description": "Circuit voltage (default 120)"},
        },
        "required": ["amperage", "distance"],
    },
}

CHECK_USER_INVENTORY: dict[str, Any] = {
    "name": "check_user_inventory",
    "description": "Check which tools and materials the user already owns.",
    "input_schema": {
        "type": "object",
        "properties": {
            "categories": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Categories to check. Leave empty for all.",
            },
        },
        "required": [],
    },
}

SEARCH_LOCAL_STORES: dict[str, Any] = {
    "name": "search_local_stores",
    "description": "Search for a material's price and availability at local stores.",
    "input_schema": {
        "type": "object",
        "properties": {
            "material_name": {"type": "string", "description": "The material to search for"},
            "city": {"type": "string", "description": "City name"},
            "state": {"type": "string", "description": "State name or abbreviation"},
        },
        "required": ["material_name", "city", "state"],
    },
}
