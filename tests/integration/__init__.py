"""
Integration tests for the rabbitkit library.

These tests require a RabbitMQ broker, provisioned with testcontainers.
Tests are skipped automatically if Docker is not available.

Run integration tests:
    pytest tests/integration/ -v

Run only RabbitMQ tests:
    pytest tests/integration/ -v -m rabbitmq

Skip integration tests:
    pytest tests/ -v -m "not integration"
"""
