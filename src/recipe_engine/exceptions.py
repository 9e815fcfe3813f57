"""
配方引擎异常定义
"""


class RecipeEngineError(Exception):
    """配方引擎基础异常"""
    kind = "internal_error"
    status_code = 500

    def __init__(self, message: str = None):
        self.message = message or self.__class__.__doc__
        super().__init__(self.message)


class ValidationError(RecipeEngineError):
    """输入验证异常"""
    kind = "validation_error"
    status_code = 400


class RecipeParseError(ValidationError):
    """配方定义解析异常"""
    kind = "parse_error"


class NotFoundError(RecipeEngineError):
    """资源不存在或无权访问

    两种情况对调用方不可区分，避免泄露资源是否存在。
    """
    kind = "not_found"
    status_code = 404

    def __init__(self, resource_type: str, resource_id: str = None):
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type.capitalize()} not found or no access")


class StateTransitionError(RecipeEngineError):
    """状态转换异常"""
    kind = "invalid_transition"
    status_code = 409

    def __init__(self, current_state: str, target_state: str, message: str = None, required_state: str = None):
        self.current_state = current_state
        self.target_state = target_state
        self.required_state = required_state
        msg = f"Invalid state transition from '{current_state}' to '{target_state}'"
        if message:
            msg += f": {message}"
        super().__init__(msg)

