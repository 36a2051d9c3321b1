"""
Configuration management for the document store and application settings.
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


@dataclass
class DynamoDBConfig:
    """Configuration for the Amazon DynamoDB document store."""
    region: str
    endpoint_url: Optional[str]  # Set for DynamoDB Local, None for AWS
    table_prefix: str
    transaction_attempts: int
    consistent_reads: bool
    connect_timeout: int
    read_timeout: int


@dataclass
class WatchConfig:
    """Configuration for document change subscriptions."""
    poll_interval: float


@dataclass
class MCPConfig:
    """Configuration for MCP interface."""
    transport: str
    host: str
    port: int


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    dynamodb: DynamoDBConfig
    watch: WatchConfig
    mcp: MCPConfig


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {'1', 'true', 'yes', 'on'}


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # DynamoDB configuration
    dynamodb_config = DynamoDBConfig(region=os.getenv('DYNAMODB_AWS_REGION', 'ap-south-1'),
                                     endpoint_url=os.getenv('DYNAMODB_ENDPOINT_URL') or None,
                                     table_prefix=os.getenv('DYNAMODB_TABLE_PREFIX', 'studymate'),
                                     transaction_attempts=int(os.getenv('DYNAMODB_TRANSACTION_ATTEMPTS', '5')),
                                     consistent_reads=_as_bool(os.getenv('DYNAMODB_CONSISTENT_READS', 'true')),
                                     connect_timeout=int(os.getenv('DYNAMODB_CONNECT_TIMEOUT', '10')),
                                     read_timeout=int(os.getenv('DYNAMODB_READ_TIMEOUT', '30')))

    # Subscription configuration
    watch_config = WatchConfig(poll_interval=float(os.getenv('WATCH_POLL_INTERVAL', '2.0')))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     dynamodb=dynamodb_config,
                     watch=watch_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
