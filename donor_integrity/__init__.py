"""Multi-currency integrity checker for donor pledges, plans and payments."""
