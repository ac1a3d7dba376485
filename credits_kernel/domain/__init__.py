"""Pure domain layer - enums, DTOs, protocols, clock and status mapping."""
