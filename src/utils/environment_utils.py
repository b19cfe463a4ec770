from dotenv import load_dotenv
from typing import List
import os

# Utils
from utils.log_utils import LogUtil

"""
Utility class for environment variables
"""
class EnvironmentUtils:
    def __init__(self, log_util: LogUtil):

        # Load environment variables
        load_dotenv()

        # Initialize logger
        self.log_util = log_util

        # Environment variables
        self.env_variables = {
            "APP_ENV": os.getenv("APP_ENV", "production"),
            "HOST": os.getenv("HOST", "0.0.0.0"),
            "PORT": int(os.getenv("PORT", "8018")),
            "LOKI_URL": os.getenv("LOKI_URL", ""),
            "STORE_BACKEND": os.getenv("STORE_BACKEND", "memory"),
            "MONGO_URI": os.getenv("MONGO_URI", "mongodb://localhost:27017"),
            "MONGO_DB_NAME": os.getenv("MONGO_DB_NAME", "lifecycle_flow_db"),
            "MAX_EVENTS": int(os.getenv("MAX_EVENTS", "50000")),
            "SCHEDULER_INTERVAL_SECONDS": int(os.getenv("SCHEDULER_INTERVAL_SECONDS", "20")),
            "SCHEDULER_WORKERS": int(os.getenv("SCHEDULER_WORKERS", "1")),
            "SCHEDULER_BATCH_SIZE": int(os.getenv("SCHEDULER_BATCH_SIZE", "500")),
            "ENROLLMENT_LEASE_SECONDS": int(os.getenv("ENROLLMENT_LEASE_SECONDS", "300")),
            "DISPATCH_MAX_ATTEMPTS": int(os.getenv("DISPATCH_MAX_ATTEMPTS", "5")),
            "DISPATCH_BACKOFF_BASE_SECONDS": int(os.getenv("DISPATCH_BACKOFF_BASE_SECONDS", "30")),
            "DISPATCH_BACKOFF_MAX_SECONDS": int(os.getenv("DISPATCH_BACKOFF_MAX_SECONDS", "3600")),
            "AVAILABLE_CAPABILITIES": os.getenv("AVAILABLE_CAPABILITIES", "event_tracking,user_tracking,email_send,push_notification"),
            "EMAIL_SERVICE_URL": os.getenv("EMAIL_SERVICE_URL", ""),
            "NOTIFICATION_SERVICE_URL": os.getenv("NOTIFICATION_SERVICE_URL", ""),
            "TASK_SERVICE_URL": os.getenv("TASK_SERVICE_URL", ""),
            "HTTP_TIMEOUT_SECONDS": float(os.getenv("HTTP_TIMEOUT_SECONDS", "30")),
            "DEBUG": os.getenv("DEBUG", "false"),
        }

    def get_env_variable(self, variable_name: str) -> str | int | float:
        if variable_name not in self.env_variables:
            self.log_util.error(service_name="EnvironmentUtils", message=f"Environment variable {variable_name} not found")
            raise ValueError(f"Environment variable {variable_name} not found")
        return self.env_variables[variable_name]

    def get_list_variable(self, variable_name: str) -> List[str]:
        """
        Comma separated variable as a list of trimmed, non-empty values
        """
        raw = str(self.get_env_variable(variable_name))
        return [item.strip() for item in raw.split(",") if item.strip()]
