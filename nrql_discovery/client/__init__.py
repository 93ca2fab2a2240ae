"""Backend access: NerdGraph client, rate governor and error classification."""
