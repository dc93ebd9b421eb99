"""Core infrastructure shared by all bridge components."""
