from aiogram.fsm.state import State, StatesGroup


class AdminInput(StatesGroup):
    """Ожидание ввода администратора; вид действия лежит в data["action"]"""
    waiting_for_input = State()
