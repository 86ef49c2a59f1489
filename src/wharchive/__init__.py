"""WhatsApp conversation archive: ingestion and access-resolution engine."""
