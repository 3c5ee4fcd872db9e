"""
channels — Per-channel delivery providers.

Each provider exposes:
    channel                          → Channel it delivers on
    send(address, content)           → ProviderResult
    validate_address(address)        → bool

Providers are stateless apart from their HTTP client. Retry, fallback and
throttling live in the scheduling package; a provider only reports what
happened, raising ProviderTransientError or ProviderPermanentError.
"""
