"""Build configuration, toolchain invocation."""
