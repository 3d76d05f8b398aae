from fastapi import APIRouter, Depends

from dependencies import get_current_user
from models import User
from privileges import MODULES, OPERATIONS, operations_for
from utils.responses import success

router = APIRouter(prefix="/api/meta", tags=["meta"])


@router.get("/privileges")
def list_privileges(current_user: User = Depends(get_current_user)):
    """Modules and the operations grantable on each"""
    return success({
        "modules": list(MODULES),
        "operations": list(OPERATIONS),
        "moduleOperations": {module: list(operations_for(module)) for module in MODULES},
    })
