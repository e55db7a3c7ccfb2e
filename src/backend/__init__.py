"""
CLI Gateway - Local HTTP gateway for AI command-line tools
==========================================================

FastAPI backend that runs the claude, codex and gemini CLIs, and Gemini Code
Assist over OAuth, behind one loopback request shape.

Key Features:
    - **Generation**: blocking JSON results or server-sent event streams
    - **Limits**: process concurrency cap, sliding rate window, clamped timeouts
    - **Cancellation**: client disconnects kill the tool's process group
    - **Model Discovery**: model lists derived from each tool's local state
    - **Self-Maintenance**: manifest-driven updates, restart and guarded self-removal
    - **Structured Logging**: JSON logs with rotation and request correlation

Modules:
    api: FastAPI app, routes, middleware and gateway services
    core: Settings, error types, tool registry, executable resolution
    models: Pydantic request/response schemas and error codes
    utils: Logging, HTTP client factory, TTL cache, atomic file writes
    integrations: Gemini Code Assist client and OAuth client discovery
"""
