"""
Integrations Module - Remote API Integrations
=============================================

Provides the one tool that talks to a remote API directly instead of through
a local executable.

Modules:
    gemini_client: Gemini Code Assist client (token lifecycle, project lookup,
        serialized dispatch, retry with backoff)
    gemini_oauth: Discovery of the OAuth client id/secret embedded in an
        installed Gemini CLI package

Example:
    Calling Code Assist:

        from core.tool_registry import ApiInvocation
        from integrations.gemini_client import (
            GeminiCodeAssistClient,
            build_generate_request,
            extract_response_text,
        )
        from integrations.gemini_oauth import OAuthClientDiscovery

        client = GeminiCodeAssistClient(settings, http_client, OAuthClientDiscovery(resolver))
        payload = await client.generate(ApiInvocation("gemini-2.5-flash", build_generate_request("Hello")))
        text = extract_response_text(payload)

See Also:
    :mod:`core.tool_registry`: ApiTool descriptor that wraps the client
"""
