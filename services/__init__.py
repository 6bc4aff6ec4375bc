"""Settlement services: ingestion, pixel validation, attribution, risk and payouts."""
