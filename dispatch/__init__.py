"""
Generation dispatch: catalog, fallback chains, credit ledger and the engine
that walks a chain until a provider succeeds.

Import from the submodules directly (providers/ depends on dispatch.routing_types).
"""
