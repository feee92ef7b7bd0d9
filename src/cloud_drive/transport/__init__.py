"""HTTP request descriptions, transport and retry orchestration."""
