from .client import DeployResult, Deployment, VercelClient, VercelError, branch_to_subdomain

__all__ = ["DeployResult", "Deployment", "VercelClient", "VercelError", "branch_to_subdomain"]
