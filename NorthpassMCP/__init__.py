"""Northpass LMS API client and MCP server for partner certification tracking."""
