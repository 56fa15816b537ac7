from dotenv import load_dotenv
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
            "ORG_ID": os.getenv("ORG_ID", "ChatFlow"),
            "LOKI_URL": os.getenv("LOKI_URL", ""),
            "MONGO_URI": os.getenv("MONGO_URI", "mongodb://localhost:27017"),
            "MONGO_DB_NAME": os.getenv("MONGO_DB_NAME", "chatflow_db"),
            "WHATSAPP_API_BASE_URL": os.getenv("WHATSAPP_API_BASE_URL", "https://graph.facebook.com/v18.0"),
            "WHATSAPP_VERIFY_TOKEN": os.getenv("WHATSAPP_VERIFY_TOKEN", ""),
            "SEND_TIMEOUT_SECONDS": float(os.getenv("SEND_TIMEOUT_SECONDS", "10")),
            "CALLBACK_TIMEOUT_SECONDS": float(os.getenv("CALLBACK_TIMEOUT_SECONDS", "10")),
            "MAX_STEPS_PER_INVOCATION": int(os.getenv("MAX_STEPS_PER_INVOCATION", "50")),
            "SESSION_TTL_SECONDS": int(os.getenv("SESSION_TTL_SECONDS", "86400")),
            "SESSION_PERSIST_RETRIES": int(os.getenv("SESSION_PERSIST_RETRIES", "3")),
            "DELAY_SCHEDULER_INTERVAL_SECONDS": float(os.getenv("DELAY_SCHEDULER_INTERVAL_SECONDS", "5")),
            "FALLBACK_MESSAGE": os.getenv("FALLBACK_MESSAGE", ""),
            "DEBUG": os.getenv("DEBUG", "false"),
        }

    def get_env_variable(self, variable_name: str) -> str | int | float:
        if variable_name not in self.env_variables:
            self.log_util.error(service_name="EnvironmentUtils", message=f"Environment variable {variable_name} not found")
            raise ValueError(f"Environment variable {variable_name} not found")
        return self.env_variables[variable_name]
