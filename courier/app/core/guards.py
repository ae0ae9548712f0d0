"""
Security guards for role-based and ownership-based access control.

Decides who may look at a parcel and which workflow actions each role may
request. Whether an action is legal for the parcel's current status is
decided by the workflow engine alone.
"""

from typing import List
from fastapi import Depends, HTTPException, status
from courier.app.models.enums import UserRole
from courier.app.models.parcel_enums import ParcelAction
from courier.app.core.dependencies import get_current_user


# Actions each role may request through the API
ROLE_ACTIONS = {
    UserRole.ADMIN: {
        ParcelAction.ASSIGN,
        ParcelAction.REASSIGN,
        ParcelAction.CANCEL,
        ParcelAction.CONFIRM_DELIVERY,
    },
    UserRole.DRIVER: {
        ParcelAction.PICKUP,
        ParcelAction.DEPART,
        ParcelAction.ARRIVE,
    },
    UserRole.CUSTOMER: {
        ParcelAction.CANCEL,
        ParcelAction.CONFIRM_DELIVERY,
        ParcelAction.COMPLETE,
    },
}


def require_role(allowed_roles: List[UserRole]):
    """
    Dependency factory for role-based access control.

    Usage:
        @router.get("/drivers/candidates")
        async def candidates(current_user: dict = Depends(require_role([UserRole.ADMIN]))):
            ...

    Raises:
        HTTPException 403 if user role is not in allowed_roles
    """
    async def role_checker(current_user: dict = Depends(get_current_user)) -> dict:
        try:
            user_role = UserRole(current_user.get("role"))
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Invalid role in token"
            )

        if user_role not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required role: {', '.join([r.value for r in allowed_roles])}"
            )

        return current_user

    return role_checker


class ParcelAccessGuard:
    """
    Ownership guard for parcels.

    Admins see every parcel. Drivers see parcels assigned to them.
    Customers see parcels they sent or are receiving.
    """

    def can_view(self, parcel, current_user: dict) -> bool:
        role = current_user.get("role")
        user_id = current_user.get("user_id")

        if role == UserRole.ADMIN.value:
            return True
        if role == UserRole.DRIVER.value:
            return parcel.driver_id == user_id
        return user_id in (parcel.sender_id, parcel.recipient_id)

    def enforce_view(self, parcel, current_user: dict):
        if not self.can_view(parcel, current_user):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Access denied. You do not have permission to access this parcel."
            )

    def enforce_action(self, parcel, action: ParcelAction, current_user: dict):
        """
        Raise 403 unless the caller's role may request this action on this parcel.
        """
        try:
            role = UserRole(current_user.get("role"))
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Invalid role in token"
            )

        if action not in ROLE_ACTIONS.get(role, set()):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role {role.value} may not perform '{action.value}'"
            )

        user_id = current_user.get("user_id")
        if role == UserRole.DRIVER and parcel.driver_id != user_id:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="This parcel is not assigned to you"
            )

        # The engine re-checks driver and completion ownership on the locked row
        if role == UserRole.CUSTOMER:
            if action in (ParcelAction.CONFIRM_DELIVERY, ParcelAction.COMPLETE) and parcel.recipient_id != user_id:
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail=f"Only the recipient can {action.value.replace('_', ' ')} this parcel"
                )
            if action == ParcelAction.CANCEL and parcel.sender_id != user_id:
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail="Only the sender can cancel this parcel"
                )

        self.enforce_view(parcel, current_user)
