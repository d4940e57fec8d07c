"""
tests/
------
FhirMan — FHIR Patient CLI — Test Package
-----------------------------------------
Test Modules:
    - test_fhir_client.py: create / search / operation over httpx.MockTransport,
                           STU3 XML encoding
    - test_handlers.py:    -s / -u / -o handler output, logging and failures
    - test_file_log.py:    append-only log file
    - test_config.py:      settings validation, env overrides, result schemas
    - test_main.py:        command dispatch and exit contract

Project: FhirMan — FHIR Patient CLI
"""
