"""Partner sync: PRM and LMS reconciliation for the partner portal."""
