"""EvoFit backend: tier entitlements computation, caching and enforcement."""
