"""structgen: schema-validated structured generation with layered recovery and audit logging."""
