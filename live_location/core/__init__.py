"""
Доменное ядро: привязки заказов и геометрия.
"""
