"""
Taleforge Backend Test Suite

Test structure:
- unit/: Test components in isolation with scripted collaborators
- integration/: Test full turns through the phase state machine
- e2e/: Real LLM tests (marked @pytest.mark.slow)
- mocks/: Scripted engine and failing stores for testing
"""
