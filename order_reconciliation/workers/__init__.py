"""Background workers: pending order maintenance and invoice rendering."""
