import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from pymongo.database import Database

from catalog import CATEGORY_INFO, build_product_query, parse_sort, present_product, unique_slug
from database import get_db, to_object_id, utcnow
from schemas import Category, Product as ProductSchema, ProductImage
from security import require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/products", tags=["products"])


class ProductIn(BaseModel):
    name: str = Field(..., min_length=3, max_length=100)
    description: str = Field(..., min_length=10, max_length=1000)
    short_description: Optional[str] = Field(None, max_length=200)
    category: Category
    brand: str = Field(..., min_length=2, max_length=50)
    price: float = Field(..., ge=0, le=10000)
    original_price: Optional[float] = Field(None, ge=0)
    stock: int = Field(0, ge=0)
    min_stock: int = Field(5, ge=0)
    images: List[ProductImage] = []
    tags: List[str] = []
    specifications: Dict[str, Any] = {}
    is_active: bool = True
    is_featured: bool = False
    is_on_sale: bool = False


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=3, max_length=100)
    description: Optional[str] = Field(None, min_length=10, max_length=1000)
    short_description: Optional[str] = Field(None, max_length=200)
    category: Optional[Category] = None
    brand: Optional[str] = Field(None, min_length=2, max_length=50)
    price: Optional[float] = Field(None, ge=0, le=10000)
    original_price: Optional[float] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    min_stock: Optional[int] = Field(None, ge=0)
    images: Optional[List[ProductImage]] = None
    tags: Optional[List[str]] = None
    specifications: Optional[Dict[str, Any]] = None
    is_active: Optional[bool] = None
    is_featured: Optional[bool] = None
    is_on_sale: Optional[bool] = None


class SearchInput(BaseModel):
    query: str = Field(..., min_length=2, max_length=100)
    category: Optional[Category] = None
    brand: Optional[str] = None
    min_price: Optional[float] = Field(None, ge=0)
    max_price: Optional[float] = Field(None, ge=0)
    limit: int = Field(20, ge=1, le=50)


def _find_active(db: Database, query: Dict[str, Any], sort: List[tuple], limit: int) -> List[dict]:
    cursor = db["product"].find({"is_active": True, **query}).sort(sort).limit(limit)
    return [present_product(p) for p in cursor]


@router.get("")
def list_products(
    search: Optional[str] = None,
    category: Optional[Category] = None,
    brand: Optional[str] = None,
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    in_stock: Optional[bool] = None,
    featured: Optional[bool] = None,
    on_sale: Optional[bool] = None,
    sort: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
    db: Database = Depends(get_db),
):
    query = build_product_query(
        search=search,
        category=category,
        brand=brand,
        min_price=min_price,
        max_price=max_price,
        in_stock=in_stock,
        is_featured=featured,
        is_on_sale=on_sale,
    )
    collection = db["product"]
    total = collection.count_documents(query)
    skip = (page - 1) * limit
    cursor = collection.find(query).sort(parse_sort(sort)).skip(skip).limit(limit)
    items = [present_product(d) for d in cursor]
    return {"items": items, "total": total, "page": page, "limit": limit, "pages": -(-total // limit)}


@router.get("/categories")
def list_categories(db: Database = Depends(get_db)):
    return {
        "categories": [
            {"id": key, **info, "count": db["product"].count_documents({"category": key, "is_active": True})}
            for key, info in CATEGORY_INFO.items()
        ]
    }


@router.get("/brands")
def list_brands(db: Database = Depends(get_db)):
    return {"brands": sorted(db["product"].distinct("brand", {"is_active": True}))}


@router.get("/featured")
def featured_products(limit: int = Query(8, ge=1, le=50), db: Database = Depends(get_db)):
    return {"items": _find_active(db, {"is_featured": True}, [("created_at", -1)], limit)}


@router.get("/popular")
def popular_products(limit: int = Query(8, ge=1, le=50), db: Database = Depends(get_db)):
    return {"items": _find_active(db, {}, [("sales.total_sold", -1), ("ratings.average", -1)], limit)}


@router.get("/on-sale")
def on_sale_products(limit: int = Query(12, ge=1, le=50), db: Database = Depends(get_db)):
    return {"items": _find_active(db, {"is_on_sale": True}, [("updated_at", -1)], limit)}


@router.post("/search")
def search_products(payload: SearchInput, db: Database = Depends(get_db)):
    query = build_product_query(
        search=payload.query,
        category=payload.category,
        brand=payload.brand,
        min_price=payload.min_price,
        max_price=payload.max_price,
    )
    cursor = db["product"].find(query).sort([("sales.total_sold", -1)]).limit(payload.limit)
    items = [present_product(p) for p in cursor]
    return {"items": items, "total": len(items), "query": payload.query}


@router.get("/slug/{slug}")
def get_product_by_slug(slug: str, db: Database = Depends(get_db)):
    product = db["product"].find_one({"slug": slug, "is_active": True})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return present_product(product)


@router.get("/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    obj_id = to_object_id(product_id, "product id")
    product = db["product"].find_one({"_id": obj_id, "is_active": True})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    similar = _find_active(
        db,
        {"category": product["category"], "_id": {"$ne": obj_id}},
        [("ratings.average", -1)],
        4,
    )
    return {**present_product(product), "similar": similar}


@router.post("", status_code=201)
def create_product(data: ProductIn, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    product = ProductSchema(**data.model_dump(), slug=unique_slug(db, data.name)).model_dump()
    now = utcnow()
    product.update(created_at=now, updated_at=now)
    res = db["product"].insert_one(product)
    logger.info("Product %s created by %s", res.inserted_id, admin["email"])
    return present_product(db["product"].find_one({"_id": res.inserted_id}))


@router.put("/{product_id}")
def update_product(
    product_id: str,
    data: ProductUpdate,
    admin: dict = Depends(require_admin),
    db: Database = Depends(get_db),
):
    obj_id = to_object_id(product_id, "product id")
    update_dict = data.model_dump(exclude_unset=True)
    if not update_dict:
        raise HTTPException(status_code=400, detail="No fields to update")
    if "name" in update_dict:
        update_dict["slug"] = unique_slug(db, update_dict["name"], exclude_id=obj_id)
    update_dict["updated_at"] = utcnow()
    res = db["product"].update_one({"_id": obj_id}, {"$set": update_dict})
    if res.matched_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    return present_product(db["product"].find_one({"_id": obj_id}))


@router.delete("/{product_id}")
def delete_product(product_id: str, admin: dict = Depends(require_admin), db: Database = Depends(get_db)):
    obj_id = to_object_id(product_id, "product id")
    res = db["product"].update_one({"_id": obj_id}, {"$set": {"is_active": False, "updated_at": utcnow()}})
    if res.matched_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    logger.info("Product %s deactivated by %s", product_id, admin["email"])
    return {"ok": True}
