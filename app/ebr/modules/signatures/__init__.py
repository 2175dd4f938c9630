"""Electronic signatures: canonical payloads, signing, verification."""
