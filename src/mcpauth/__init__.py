# mcpauth: OAuth 2.1 authorization server engine for MCP backends.
# Created: 2026-10-18
