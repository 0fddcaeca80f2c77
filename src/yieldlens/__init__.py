"""Position reconstruction and yield attribution for lending-protocol wallets."""
