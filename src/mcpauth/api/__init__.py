# mcpauth HTTP layer.
# Created: 2026-10-18
#
# Versioned OAuth endpoints at /api/v1/, discovery documents at /.well-known/.
