# Services package init
"""
Shotify Backend — Services Layer
==================================

What:  Logic that sits between the HTTP routes and the outbound clients.

Service Inventory:
    - ImageRelay: validates target URLs, fetches upstream images through the
      shared httpx client, and exposes the body as a stream
"""
