"""Read-only template lookups (section trees and rules)."""
