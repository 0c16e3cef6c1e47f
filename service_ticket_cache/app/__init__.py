"""
Ticket cache package.

Client-side data layer for the ticket tracker. It keeps a locally cached
view of server-owned tickets and comments consistent across concurrent
reads, writes, filter changes and failures.

Structure:
- app.context: TicketCacheContext, construction and teardown of the graph.
- app.queries: Cached read surface for lists, details and comments.
- app.caching: Fingerprint codec, query cache and subscription registry.
- app.mutations: Optimistic mutation coordinator and pending records.
- app.adapters: HTTP client for the ticket REST API.
"""
