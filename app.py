import logging
import os
import sqlite3
from contextlib import contextmanager

from authlib.integrations.flask_client import OAuth
from dotenv import load_dotenv
from flask import (
    Flask,
    abort,
    flash,
    g,
    jsonify,
    redirect,
    render_template,
    request,
    send_from_directory,
    session,
    url_for,
)
from werkzeug.exceptions import HTTPException

import catalog
import db
import orders
import reviews
import users
from errors import InternalError, StoreError, ValidationError
from users import admin_required, login_required

load_dotenv()

BASE_DIR = os.path.dirname(os.path.abspath(__file__))

CURRENCY = os.environ.get("SHOP_CURRENCY", "EGP")
COOKIE_SECURE = os.environ.get("COOKIE_SECURE", "0") == "1"
MAX_FILE_SIZE = int(os.environ.get("MAX_FILE_SIZE", 5 * 1024 * 1024))
GOOGLE_CLIENT_ID = os.environ.get("GOOGLE_CLIENT_ID", "")
GOOGLE_CLIENT_SECRET = os.environ.get("GOOGLE_CLIENT_SECRET", "")
ADMIN_EMAIL = os.environ.get("ADMIN_EMAIL", "admin@elreem.com")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "admin123")

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = Flask(__name__, static_folder="static", template_folder="templates")
app.secret_key = os.environ.get("FLASK_SECRET_KEY", "dev-secret-change-me")

app.config.update(
    DATABASE=os.environ.get("SHOP_DB_PATH", os.path.join(BASE_DIR, "store.db")),
    UPLOAD_FOLDER=os.environ.get("UPLOAD_FOLDER", os.path.join(BASE_DIR, "uploads")),
    MAX_FILE_SIZE=MAX_FILE_SIZE,
    # room for a full batch of images plus the form fields
    MAX_CONTENT_LENGTH=MAX_FILE_SIZE * catalog.MAX_IMAGES + 1024 * 1024,
    REVIEWS_REQUIRE_PURCHASE=os.environ.get("REVIEWS_REQUIRE_PURCHASE", "0") == "1",
    SESSION_COOKIE_HTTPONLY=True,
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=COOKIE_SECURE,
)

oauth = OAuth(app)
if GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET:
    oauth.register(
        name="google",
        client_id=GOOGLE_CLIENT_ID,
        client_secret=GOOGLE_CLIENT_SECRET,
        server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
        client_kwargs={"scope": "openid email profile"},
    )

LANGUAGES = ("ar", "en")
DEFAULT_LANG = "ar"

TEXT = {
    "en": {
        "brand": "Elreem Bags",
        "tagline": "Handbags and totes picked for every day",
        "nav_home": "Home",
        "nav_cart": "Cart",
        "nav_orders": "My orders",
        "nav_reviews": "Reviews",
        "nav_admin": "Admin",
        "login": "Log in",
        "logout": "Log out",
        "signup": "Sign up",
        "google_login": "Continue with Google",
        "language": "العربية",
        "add_to_cart": "Add to cart",
        "colors": "Colors",
        "quantity": "Quantity",
        "in_stock": "In stock",
        "out_of_stock": "Out of stock",
        "cart": "Shopping cart",
        "empty_cart": "Your cart is empty for now.",
        "subtotal": "Subtotal",
        "shipping": "Shipping",
        "total": "Total",
        "checkout": "Checkout",
        "customer_name": "Full name",
        "phone": "Phone",
        "address": "Address",
        "email": "Email",
        "password": "Password",
        "confirm_password": "Confirm password",
        "first_name": "First name",
        "last_name": "Last name",
        "place_order": "Place order",
        "orders": "Order history",
        "no_orders": "You have not placed any orders yet.",
        "order": "Order",
        "status": "Status",
        "cancel_order": "Cancel order",
        "reviews": "Reviews",
        "your_reviews": "Your reviews",
        "to_review": "Waiting for your review",
        "no_reviews": "No reviews yet.",
        "rating": "Rating",
        "comment": "Comment",
        "submit": "Submit",
        "remove": "Remove",
        "delete": "Delete",
        "admin": "Dashboard",
        "inventory": "Inventory",
        "new_bag": "Add a bag",
        "name_en": "Name (English)",
        "name_ar": "Name (Arabic)",
        "description_en": "Description (English)",
        "description_ar": "Description (Arabic)",
        "price": "Price",
        "images": "Images",
        "save": "Save",
        "reports": "Order reports",
        "manage_reviews": "Reviews management",
        "total_orders": "Total orders",
        "total_revenue": "Total revenue",
        "pending_orders": "Pending orders",
        "products": "Products",
        "error": "Something went wrong",
        "back": "Back to store",
        "login_failed": "Email or password is incorrect.",
        "login_needed": "Please log in first.",
        "welcome": "Welcome back!",
        "signed_up": "Your account is ready.",
        "logged_out": "You have been logged out.",
        "statuses": {
            "In Progress": "In progress",
            "Confirmed": "Confirmed",
            "Delivered": "Delivered",
            "Canceled": "Canceled",
        },
    },
    "ar": {
        "brand": "حقائب الريم",
        "tagline": "حقائب يد وحقائب حمل مختارة لكل يوم",
        "nav_home": "الرئيسية",
        "nav_cart": "السلة",
        "nav_orders": "طلباتي",
        "nav_reviews": "التقييمات",
        "nav_admin": "الإدارة",
        "login": "تسجيل الدخول",
        "logout": "تسجيل الخروج",
        "signup": "إنشاء حساب",
        "google_login": "المتابعة باستخدام جوجل",
        "language": "English",
        "add_to_cart": "أضف للسلة",
        "colors": "الألوان",
        "quantity": "الكمية",
        "in_stock": "متوفر",
        "out_of_stock": "غير متوفر",
        "cart": "سلة التسوق",
        "empty_cart": "السلة فاضية حالياً.",
        "subtotal": "المجموع الفرعي",
        "shipping": "الشحن",
        "total": "الإجمالي",
        "checkout": "إتمام الطلب",
        "customer_name": "الاسم بالكامل",
        "phone": "رقم الهاتف",
        "address": "العنوان",
        "email": "البريد الإلكتروني",
        "password": "كلمة المرور",
        "confirm_password": "تأكيد كلمة المرور",
        "first_name": "الاسم الأول",
        "last_name": "اسم العائلة",
        "place_order": "تأكيد الطلب",
        "orders": "سجل الطلبات",
        "no_orders": "لم تقم بأي طلب بعد.",
        "order": "طلب",
        "status": "الحالة",
        "cancel_order": "إلغاء الطلب",
        "reviews": "التقييمات",
        "your_reviews": "تقييماتك",
        "to_review": "بانتظار تقييمك",
        "no_reviews": "لا توجد تقييمات بعد.",
        "rating": "التقييم",
        "comment": "التعليق",
        "submit": "إرسال",
        "remove": "إزالة",
        "delete": "حذف",
        "admin": "لوحة التحكم",
        "inventory": "المخزون",
        "new_bag": "إضافة حقيبة",
        "name_en": "الاسم (إنجليزي)",
        "name_ar": "الاسم (عربي)",
        "description_en": "الوصف (إنجليزي)",
        "description_ar": "الوصف (عربي)",
        "price": "السعر",
        "images": "الصور",
        "save": "حفظ",
        "reports": "تقارير الطلبات",
        "manage_reviews": "إدارة التقييمات",
        "total_orders": "إجمالي الطلبات",
        "total_revenue": "إجمالي الإيرادات",
        "pending_orders": "طلبات قيد التنفيذ",
        "products": "المنتجات",
        "error": "حدث خطأ ما",
        "back": "العودة للمتجر",
        "login_failed": "البريد الإلكتروني أو كلمة المرور غير صحيحة.",
        "login_needed": "من فضلك سجّل الدخول أولاً.",
        "welcome": "أهلاً بعودتك!",
        "signed_up": "تم إنشاء حسابك.",
        "logged_out": "تم تسجيل الخروج.",
        "statuses": {
            "In Progress": "قيد التنفيذ",
            "Confirmed": "مؤكد",
            "Delivered": "تم التوصيل",
            "Canceled": "ملغي",
        },
    },
}


def get_db():
    if "db" not in g:
        g.db = db.connect(app.config["DATABASE"])
    return g.db


@app.teardown_appcontext
def close_db(exc):
    conn = g.pop("db", None)
    if conn is not None:
        conn.close()


def init_db():
    db.init_db(app.config["DATABASE"], ADMIN_EMAIL, ADMIN_PASSWORD)


@app.cli.command("init-db")
def init_db_command():
    """Create the tables, the admin account and the sample bags."""
    init_db()


@app.before_request
def pick_language():
    """``?lang=`` switches the UI language and the choice sticks in the session."""
    requested = request.args.get("lang")
    if requested in LANGUAGES:
        session["lang"] = requested
    g.lang = session.get("lang") if session.get("lang") in LANGUAGES else DEFAULT_LANG


@app.before_request
def load_user():
    g.user = None
    user_id = session.get("user_id")
    if user_id is not None:
        g.user = users.get_user(get_db(), user_id)
        if g.user is None:
            session.pop("user_id", None)


CSP = {
    "default-src": "'self'",
    "img-src": "'self' data: https:",
    "style-src": "'self' 'unsafe-inline' https://fonts.googleapis.com",
    "font-src": "'self' https://fonts.gstatic.com",
    "script-src": "'self'",
    "base-uri": "'self'",
    # the Google sign-in redirect is a form post target
    "form-action": "'self' https://accounts.google.com",
    "frame-ancestors": "'none'",
}

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
    "Cross-Origin-Opener-Policy": "same-origin",
    "Content-Security-Policy": "; ".join(f"{name} {value}" for name, value in CSP.items()),
}


@app.after_request
def add_security_headers(resp):
    for name, value in SECURITY_HEADERS.items():
        resp.headers.setdefault(name, value)
    return resp


def wants_json() -> bool:
    return request.path.startswith("/api/") or request.path == "/health"


@app.errorhandler(StoreError)
def handle_store_error(err: StoreError):
    if wants_json():
        return jsonify(err.to_dict()), err.status_code
    return render("error.html", message=err.message), err.status_code


@app.errorhandler(sqlite3.Error)
def handle_db_error(err):
    app.logger.exception("Database error on %s %s", request.method, request.path)
    return handle_store_error(InternalError())


@app.errorhandler(HTTPException)
def handle_http_error(err: HTTPException):
    if wants_json():
        return jsonify({"error": err.description}), err.code
    return render("error.html", message=err.description), err.code


def render(template: str, **context):
    lang = g.get("lang", DEFAULT_LANG)
    user = g.get("user")
    cart_count = orders.cart_count(get_db(), user["id"]) if user else 0
    return render_template(
        template,
        lang=lang,
        t=TEXT[lang],
        user=user,
        cart_count=cart_count,
        currency=CURRENCY,
        google_enabled=bool(GOOGLE_CLIENT_ID),
        **context,
    )


def json_body() -> dict:
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


# ---------- Pages ----------


@app.route("/")
def index():
    bags = catalog.list_bags(get_db(), in_stock_only=True)
    return render("index.html", bags=bags)


@app.route("/product/<int:bag_id>")
def product(bag_id: int):
    conn = get_db()
    bag = catalog.get_bag(conn, bag_id)
    return render("product.html", bag=bag, reviews=reviews.bag_reviews(conn, bag_id))


@app.route("/cart")
@login_required
def cart():
    return render("cart.html", cart=orders.get_cart(get_db(), g.user["id"]))


@app.route("/orders")
@login_required
def order_history():
    return render("orders.html", orders=orders.list_orders(get_db(), g.user["id"]))


@app.route("/reviews")
@login_required
def reviews_page():
    conn = get_db()
    return render(
        "reviews.html",
        user_reviews=reviews.user_reviews(conn, g.user["id"]),
        available_bags=reviews.reviewable_bags(conn, g.user["id"]),
    )


@app.route("/login", methods=["GET", "POST"])
def login():
    if g.user is not None:
        return redirect(url_for("index"))
    lang = g.lang
    if request.method == "POST":
        user = users.authenticate(get_db(), request.form.get("email"), request.form.get("password"))
        if user is None:
            flash(TEXT[lang]["login_failed"], "error")
            return render("login.html", email=request.form.get("email", "")), 401
        users.login_user(user)
        session["lang"] = lang
        flash(TEXT[lang]["welcome"], "success")
        return redirect(safe_next_url())
    return render("login.html", email="")


@app.route("/signup", methods=["GET", "POST"])
def signup():
    if g.user is not None:
        return redirect(url_for("index"))
    lang = g.lang
    if request.method == "POST":
        form = request.form
        try:
            user = users.create_user(
                get_db(),
                form.get("firstName"),
                form.get("lastName"),
                form.get("email"),
                form.get("password"),
                form.get("confirmPassword"),
                form.get("phone"),
            )
        except StoreError as err:
            flash(err.message, "error")
            return render("signup.html", form=form), err.status_code
        users.login_user(user)
        session["lang"] = lang
        flash(TEXT[lang]["signed_up"], "success")
        return redirect(url_for("index"))
    return render("signup.html", form={})


@app.route("/logout")
def logout():
    lang = g.lang
    users.logout_user()
    flash(TEXT[lang]["logged_out"], "success")
    return redirect(url_for("login"))


def safe_next_url() -> str:
    target = request.args.get("next") or ""
    if target.startswith("/") and not target.startswith("//"):
        return target
    return url_for("index")


@app.route("/auth/google")
def auth_google():
    if not GOOGLE_CLIENT_ID:
        abort(404)
    return oauth.google.authorize_redirect(url_for("auth_google_callback", _external=True))


@app.route("/auth/google/callback")
def auth_google_callback():
    if not GOOGLE_CLIENT_ID:
        abort(404)
    lang = g.lang
    try:
        token = oauth.google.authorize_access_token()
    except Exception:
        app.logger.exception("Google sign-in failed")
        flash(TEXT[lang]["login_failed"], "error")
        return redirect(url_for("login"))
    profile = token.get("userinfo") or oauth.google.userinfo()
    user = users.google_login(get_db(), dict(profile))
    users.login_user(user)
    session["lang"] = lang
    return redirect(url_for("index"))


@app.route("/admin")
@admin_required
def admin_dashboard():
    return render("admin/dashboard.html", stats=orders.admin_stats(get_db()))


@app.route("/admin/repository")
@admin_required
def admin_repository():
    return render("admin/repository.html", bags=catalog.list_bags(get_db()))


@app.route("/admin/reports")
@admin_required
def admin_reports():
    conn = get_db()
    return render("admin/reports.html", orders=orders.list_orders(conn), stats=orders.admin_stats(conn))


@app.route("/admin/reviews")
@admin_required
def admin_reviews():
    return render("admin/reviews.html", reviews=reviews.all_reviews(get_db()))


@app.route("/uploads/<path:filename>")
def uploaded_file(filename):
    return send_from_directory(app.config["UPLOAD_FOLDER"], filename)


@app.route("/health")
def health():
    database = db.health_check(app.config["DATABASE"])
    status = "ok" if database["connected"] else "error"
    return jsonify({"status": status, "database": database}), 200 if database["connected"] else 503


# ---------- Cart & orders API ----------


@app.post("/api/cart/add")
@login_required
def api_cart_add():
    data = json_body()
    bag_id = catalog.parse_id(data.get("bagId"), "Invalid bag ID or quantity")
    orders.add_item(get_db(), g.user["id"], bag_id, data.get("quantity"), data.get("selectedColor"))
    return jsonify({"success": True, "message": "Item added to cart"})


@app.put("/api/cart/update/<int:item_id>")
@login_required
def api_cart_update(item_id: int):
    orders.update_item_quantity(get_db(), g.user["id"], item_id, json_body().get("quantity"))
    return jsonify({"success": True, "message": "Cart updated"})


@app.delete("/api/cart/remove/<int:item_id>")
@login_required
def api_cart_remove(item_id: int):
    orders.remove_item(get_db(), g.user["id"], item_id)
    return jsonify({"success": True, "message": "Item removed from cart"})


@app.get("/api/cart")
@login_required
def api_cart():
    return jsonify({"success": True, "data": orders.get_cart(get_db(), g.user["id"])})


@app.get("/api/cart/count")
@login_required
def api_cart_count():
    return jsonify({"count": orders.cart_count(get_db(), g.user["id"])})


@app.post("/api/checkout")
@login_required
def api_checkout():
    order_id = orders.checkout(get_db(), g.user["id"], json_body())
    return jsonify({"success": True, "message": "Order placed successfully", "orderId": order_id})


@app.get("/api/orders")
@login_required
def api_orders():
    return jsonify({"success": True, "data": orders.list_orders(get_db(), g.user["id"])})


@app.post("/api/order/cancel/<int:order_id>")
@login_required
def api_order_cancel(order_id: int):
    orders.cancel_order(get_db(), g.user["id"], order_id)
    return jsonify({"success": True, "message": "Order cancelled successfully"})


# ---------- Catalog API ----------


@app.get("/api/bags")
def api_bags():
    return jsonify({"success": True, "data": catalog.list_bags(get_db(), in_stock_only=True)})


@app.get("/api/bags/<int:bag_id>")
def api_bag(bag_id: int):
    return jsonify(catalog.get_bag(get_db(), bag_id))


def bag_form() -> dict:
    if request.is_json:
        return json_body()
    data = request.form.to_dict()
    colors = request.form.getlist("colors")
    if len(colors) > 1:
        data["colors"] = colors
    return data


@contextmanager
def uploaded_images():
    """Save the request's images, removing them again if the block fails."""
    folder = app.config["UPLOAD_FOLDER"]
    images = catalog.save_images(request.files.getlist("images"), folder, app.config["MAX_FILE_SIZE"])
    try:
        yield images
    except Exception:
        catalog.remove_images(images, folder)
        raise


@app.post("/api/admin/bags")
@admin_required
def api_admin_bag_create():
    data = bag_form()
    with uploaded_images() as images:
        bag_id = catalog.create_bag(get_db(), data, images)
    return jsonify({"success": True, "message": "Bag added successfully", "bagId": bag_id}), 201


@app.put("/api/admin/bags/<int:bag_id>")
@admin_required
def api_admin_bag_update(bag_id: int):
    data = bag_form()
    with uploaded_images() as images:
        bag = catalog.update_bag(get_db(), bag_id, data, images)
    return jsonify({"success": True, "message": "Bag updated successfully", "data": bag})


@app.delete("/api/admin/bags/<int:bag_id>")
@admin_required
def api_admin_bag_delete(bag_id: int):
    catalog.delete_bag(get_db(), bag_id)
    return jsonify({"success": True, "message": "Bag deleted successfully"})


# ---------- Admin orders API ----------


@app.put("/api/admin/orders/<int:order_id>/status")
@admin_required
def api_admin_order_status(order_id: int):
    orders.admin_set_status(get_db(), order_id, json_body().get("status"))
    return jsonify({"success": True, "message": "Order status updated successfully"})


@app.get("/api/admin/stats")
@admin_required
def api_admin_stats():
    return jsonify({"success": True, "data": orders.admin_stats(get_db())})


@app.get("/api/admin/recent-activity")
@admin_required
def api_admin_recent_activity():
    return jsonify({"success": True, "data": orders.recent_activity(get_db())})


# ---------- Reviews API ----------


@app.post("/api/reviews")
@login_required
def api_review_submit():
    data = json_body()
    bag_id = catalog.parse_id(data.get("bagId"), "Valid bag ID and rating (1-5) are required")
    review_id = reviews.submit_review(
        get_db(),
        g.user["id"],
        bag_id,
        data.get("rating"),
        data.get("reviewText"),
        require_purchase=app.config["REVIEWS_REQUIRE_PURCHASE"],
    )
    return jsonify({"success": True, "message": "Review saved successfully", "reviewId": review_id})


@app.get("/api/reviews/bag/<int:bag_id>")
def api_bag_reviews(bag_id: int):
    conn = get_db()
    return jsonify(
        {
            "success": True,
            "data": reviews.bag_reviews(conn, bag_id),
            "summary": reviews.rating_summary(conn, bag_id),
        }
    )


@app.get("/api/reviews/user")
@login_required
def api_user_reviews():
    return jsonify({"success": True, "data": reviews.user_reviews(get_db(), g.user["id"])})


@app.get("/api/admin/reviews")
@admin_required
def api_admin_reviews():
    return jsonify({"success": True, "data": reviews.all_reviews(get_db())})


@app.delete("/api/admin/reviews/<int:review_id>")
@admin_required
def api_admin_review_delete(review_id: int):
    reviews.delete_review(get_db(), review_id)
    return jsonify({"success": True, "message": "Review deleted successfully"})


if __name__ == "__main__":
    init_db()
    app.run(debug=False)
