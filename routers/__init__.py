from routers import admin, analytics, auth, cart, orders, payments, products, upload

all_routers = [
    auth.router,
    products.router,
    cart.router,
    orders.router,
    admin.router,
    analytics.router,
    payments.router,
    upload.router,
]
