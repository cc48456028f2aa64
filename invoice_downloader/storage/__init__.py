"""Invoice ledger, artifact files and the encrypted credential store."""
