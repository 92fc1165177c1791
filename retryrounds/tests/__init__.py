"""Test suite for the retryrounds system.

Organized into three categories:

1. core/: Unit tests for core domain logic
   - Minimal dependencies, fast execution
   - Uses in-memory fakes for ports

2. adapters/: Tests for adapter implementations
   - Drives real pytest sessions through pytester
   - Validates reporter output and files

3. fakes/: Port implementations for testing
   - Scripted execution engine, recording sink, recording spec builder
   - Used by core unit tests
"""
