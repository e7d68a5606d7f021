"""Services for portfolio reconciliation and refresh throttling."""
