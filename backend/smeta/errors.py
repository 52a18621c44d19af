"""Exception taxonomy for the estimate model and the completion-act ledger."""


class SmetaError(Exception):
    """Base class for errors the API layer reports to the caller."""

    code = "SMETA_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NoCompletedWorksError(SmetaError):
    """
    Raised when act generation finds no eligible completion records.

    This is a user-correctable condition: the operator has to mark work as
    done (with a positive actual quantity) before an act can be produced.
    """

    code = "NO_COMPLETED_WORKS"

    def __init__(self, estimate_id: str, act_type: str):
        self.estimate_id = estimate_id
        self.act_type = act_type
        super().__init__('Выберите выполненные работы во вкладке "Выполнение"')


class ActNotFoundError(SmetaError):
    code = "ACT_NOT_FOUND"

    def __init__(self, act_id: str):
        self.act_id = act_id
        super().__init__(f"Акт {act_id} не найден")


class EstimateNotFoundError(SmetaError):
    code = "ESTIMATE_NOT_FOUND"

    def __init__(self, estimate_id: str):
        self.estimate_id = estimate_id
        super().__init__(f"Смета {estimate_id} не найдена")


class InvalidActTypeError(SmetaError):
    code = "INVALID_ACT_TYPE"

    def __init__(self, act_type: str):
        self.act_type = act_type
        super().__init__(f"Тип акта должен быть: client или specialist (получено: {act_type!r})")


class InvalidActStatusError(SmetaError):
    code = "INVALID_ACT_STATUS"

    def __init__(self, status: str):
        self.status = status
        super().__init__(f"Недопустимый статус акта: {status!r}")


class TransientPersistenceError(SmetaError):
    """Connection-level failure that survived every retry; safe to retry later."""

    code = "PERSISTENCE_UNAVAILABLE"

    def __init__(self, message: str, attempts: int):
        self.attempts = attempts
        super().__init__(message)


class CatalogWorkNotFoundError(SmetaError):
    code = "WORK_NOT_FOUND"

    def __init__(self, work_id: str):
        self.work_id = work_id
        super().__init__(f"Работа {work_id} не найдена в справочнике")


class CatalogWorkReadOnlyError(SmetaError):
    """Global catalog works are shared by every tenant and cannot be repriced by one."""

    code = "CATALOG_WORK_READ_ONLY"

    def __init__(self, work_id: str):
        self.work_id = work_id
        super().__init__(f"Работа {work_id} из общего справочника недоступна для изменения")


class ForeignEstimateItemError(SmetaError):
    """A save payload carried line ids that belong to another estimate."""

    code = "ITEM_OF_OTHER_ESTIMATE"

    def __init__(self, estimate_id: str, item_ids):
        self.estimate_id = estimate_id
        self.item_ids = sorted(item_ids)
        super().__init__(f"Позиции не принадлежат смете: {', '.join(self.item_ids)}")
