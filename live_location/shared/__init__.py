"""
Общий код сервера и клиента.

Модули:
- models: модели провода (конверт, координаты, пользователь)
- codec: кодирование/декодирование конвертов и билдеры
"""

__all__: list[str] = []
