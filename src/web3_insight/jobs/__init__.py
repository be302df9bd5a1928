"""Background jobs: payload codec, durable queue, dispatcher, worker and scheduler."""
