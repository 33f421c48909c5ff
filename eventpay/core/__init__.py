"""Settlement core: fees, ledger, charges, payouts and reporting."""
