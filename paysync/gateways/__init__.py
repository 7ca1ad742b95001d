"""Payment gateway adapters and webhook signature verification."""
