"""
Inventory counting tables.

Models:
- InventorySession (one counting pass over a zone by one actor)
- InventoryCount (current observation per session/product) + InventoryCountRevision (append-only history)
- StockRecord (live bottle stock per product and mode) + StockBatch (applied reconciliation batches)
"""
