# Routes package init
"""
Shotify Backend — API Routes Package
======================================

Route Inventory:
    - proxy.py:   GET     {API_PREFIX}/proxy-image   (image relay)
                  OPTIONS {API_PREFIX}/proxy-image   (CORS preflight)
    - health.py:  GET     /health                    (liveness + dependencies)

Routes stay thin: read the request, call a service, shape the response.
"""
