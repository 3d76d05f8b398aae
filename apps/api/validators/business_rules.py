"""Business rule configuration"""
from pydantic import BaseModel


class BusinessRules(BaseModel):
    """Business rules configuration"""
    # Appointment rules
    MAX_NOTES_LENGTH: int = 1000

    # Authentication rules
    TWO_FACTOR_TOKEN_MINUTES: int = 5
    PASSWORD_RESET_MINUTES: int = 60

    # Pagination
    DEFAULT_PAGE_SIZE: int = 10
    MAX_PAGE_SIZE: int = 100

    # Stock rules
    LOW_STOCK_ALERT_ON_DEDUCTION: bool = True


# Global instance
business_rules = BusinessRules()


def get_business_rules() -> BusinessRules:
    """Get current business rules"""
    return business_rules
