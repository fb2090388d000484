"""Task settlement: escrow ledger, task lifecycle, auto-release and dispute arbitration."""
