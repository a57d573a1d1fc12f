"""Pure domain logic: no I/O, no ORM sessions."""
