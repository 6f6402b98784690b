"""Client side of Vidstash: queueing, reconciliation and connection tracking."""
