from rest_framework.permissions import SAFE_METHODS, BasePermission


class IsContentEditorOrReadOnly(BasePermission):
    """
    Any member may read learning content. Admins and core members may create
    and edit it; only admins may delete it.
    """
    message = 'Only admins and core members can manage learning content'

    def has_permission(self, request, view):
        if request.method in SAFE_METHODS:
            return True
        user = request.user
        if not user or not user.is_authenticated:
            return False
        if request.method == 'DELETE':
            return user.can_delete_content
        return user.can_edit_content
