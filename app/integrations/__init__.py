"""app.integrations — External operation gateway modules.

Stock movements and supplier calls made by workflow runs go through a
gateway in this package, never via direct model writes or bare
`requests` calls in services or blueprints.

Every portal call is:
  - Retried with backoff
  - Returned as a structured GatewayResult (never raises for HTTP errors)

Current gateways:
  trade_gateway.InventoryGateway — warehouse stock
  trade_gateway.VendorGateway    — supplier quotes and PO confirmation
"""
