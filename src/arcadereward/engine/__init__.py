"""Play-session and reward-issuance components."""
