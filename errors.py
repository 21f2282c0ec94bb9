"""
Иерархия ошибок сервиса.

ValidationError и ConflictError показываются пользователю сразу и не
ретраятся. TransientGatewayError означает сбой внешней системы (панель,
платёжный шлюз): сущность переводится в FAILED, повтор делает только
фоновый recovery.
"""


class VPNServiceError(Exception):
    """Базовый класс для ошибок сервиса"""

    # Короткий текст для пользователя; внутренние детали остаются в логах
    user_message = "Не удалось выполнить операцию. Попробуйте позже."

    def __init__(self, message: str = "", user_message: str = None):
        super().__init__(message)
        if user_message:
            self.user_message = user_message


class ValidationError(VPNServiceError):
    """Некорректная или неизвестная цель операции"""

    user_message = "Некорректный запрос."


class ConflictError(VPNServiceError):
    """Операция запрещена текущим состоянием (лимит, отзыв, нет подписки)"""

    user_message = "Операция недоступна."


class TransientGatewayError(VPNServiceError):
    """Сеть, таймаут или 5xx от внешнего шлюза"""

    user_message = "Сервис временно недоступен. Мы повторим попытку автоматически."
