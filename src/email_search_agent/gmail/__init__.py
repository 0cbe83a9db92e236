"""Gmail mailbox provider."""
