"""Role-to-whitelist reconciliation: engine, bulk driver and event dispatch."""
