from pathlib import Path
import dotenv
import logging
import os
from typing import Optional, Dict, Any
from dataclasses import dataclass


ROOT = Path(__file__).parent.parent

dotenv.load_dotenv(ROOT / '.env')

# Third-party libraries log through the root logger
logging.basicConfig(level=logging.INFO)

# Graph settings
GRAPH_API_BASE = 'https://graph.microsoft.com/v1.0'
GRAPH_SCOPE = 'https://graph.microsoft.com/.default'
DEFAULT_AUTHORITY_HOST = 'https://login.microsoftonline.com'

# Constants
VALID_ENVIRONMENTS = ['production', 'staging', 'local']
DEFAULT_ENVIRONMENT = 'staging'
DEFAULT_CONFIG_PATH = ROOT / 'cpsync_config.yaml'


def _env(name: str, environment: str) -> Optional[str]:
    """Environment specific variable with an unsuffixed fallback"""
    return os.getenv(f'{name}_{environment.upper()}') or os.getenv(name)


@dataclass
class GraphCredentials:
    """App-only credentials for Microsoft Graph and SharePoint REST"""
    tenant_id: str
    client_id: str
    client_secret: str
    authority_host: str = DEFAULT_AUTHORITY_HOST

    @classmethod
    def from_environment(cls, environment: str) -> 'GraphCredentials':
        """
        Create Graph credentials from environment variables.

        Args:
            environment: The environment name ('production', 'staging', 'local')

        Returns:
            GraphCredentials instance

        Raises:
            ValueError: If required environment variables are missing
        """
        env_suffix = environment.upper()

        tenant_id = _env('GRAPH_TENANT_ID', environment)
        client_id = _env('GRAPH_CLIENT_ID', environment)
        client_secret = _env('GRAPH_CLIENT_SECRET', environment)

        missing_vars = []
        if not tenant_id:
            missing_vars.append(f'GRAPH_TENANT_ID_{env_suffix}')
        if not client_id:
            missing_vars.append(f'GRAPH_CLIENT_ID_{env_suffix}')
        if not client_secret:
            missing_vars.append(f'GRAPH_CLIENT_SECRET_{env_suffix}')

        if missing_vars:
            raise ValueError(f"Missing required Graph environment variables for {environment} environment: {', '.join(missing_vars)}")

        return cls(
            tenant_id=tenant_id,  # type: ignore - validated above
            client_id=client_id,  # type: ignore - validated above
            client_secret=client_secret,  # type: ignore - validated above
            authority_host=os.getenv('GRAPH_AUTHORITY_HOST', DEFAULT_AUTHORITY_HOST),
        )

    @property
    def authority(self) -> str:
        return f"{self.authority_host.rstrip('/')}/{self.tenant_id}"

    def to_msal_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for msal.ConfidentialClientApplication"""
        return {
            'client_id': self.client_id,
            'client_credential': self.client_secret,
            'authority': self.authority,
        }


def get_callback_access_token(environment: str) -> Optional[str]:
    """Bearer token presented to the callback endpoint, if any"""
    return _env('CALLBACK_ACCESS_TOKEN', environment)


def get_blob_connection_string(environment: str) -> Optional[str]:
    """Azure storage connection string; None selects the local content store"""
    return _env('BLOB_CONNECTION_STRING', environment)
