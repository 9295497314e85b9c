from .user import User  # noqa: F401
from .entitlement import Entitlement, Upload, Usage  # noqa: F401
from .purchases import ApplePurchase, GooglePurchase  # noqa: F401
