"""Pure payroll domain objects (zero I/O)."""
