"""
Renderers that turn domain records into searchable documents.

Each renderer receives one record (a plain dict with snake_case keys, as returned
by the domain sources) and produces a Document whose text reads like a short
report and whose metadata carries the fields used for filtering and ranking.
"""

from typing import Any, Callable, Dict, List, Optional

from ..models.core import Document
from ..utils.timestamp_utils import to_display_date, to_iso

# Built-in source for the system_features entity type
SYSTEM_FEATURES = [
    {
        'id': 'ai-agent',
        'name': 'AI Agent',
        'description': 'Natural language interface for business intelligence',
        'capabilities': ['Query processing', 'Semantic search', 'Data analysis']
    },
    {
        'id': 'inventory-management',
        'name': 'Inventory Management',
        'description': 'Product and stock management system',
        'capabilities': ['Product tracking', 'Stock movements', 'Batch management']
    },
    {
        'id': 'sales-management',
        'name': 'Sales Management',
        'description': 'Invoice and payment processing',
        'capabilities': ['Invoice creation', 'Payment tracking', 'Client management']
    },
    {
        'id': 'purchasing',
        'name': 'Purchasing',
        'description': 'Supplier and purchase order management',
        'capabilities': ['Supplier management', 'Purchase orders', 'Order tracking']
    },
    {
        'id': 'accounting',
        'name': 'Accounting',
        'description': 'Financial management and reporting',
        'capabilities': ['Journal entries', 'Account management', 'Financial reports']
    }
]


def _money(value: Any, default: str = 'Not set') -> str:
    if value is None or value == '':
        return default
    try:
        return f'${float(value):,.2f}'
    except (TypeError, ValueError):
        return str(value)


def _number(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def _keywords(*values: Any) -> List[str]:
    seen = []
    for value in values:
        items = value if isinstance(value, (list, tuple)) else [value]
        for item in items:
            if item is None or item == '':
                continue
            keyword = str(item).lower()
            if keyword not in seen:
                seen.append(keyword)
    return seen


def _status_tags(status: Optional[str]) -> List[str]:
    if not status:
        return []
    return [status.lower().replace(' ', '-')]


def _base_metadata(entity_type: str,
                   record: Dict[str, Any],
                   title: str,
                   status: str,
                   priority: str,
                   category: str,
                   source_system: str) -> Dict[str, Any]:
    created_at = to_iso(record.get('created_at') or '')
    updated_at = to_iso(record.get('updated_at') or '') or created_at or to_iso()
    return {
        'entity_type': entity_type,
        'entity_id': str(record.get('id')),
        'timestamp': updated_at,
        'title': title,
        'status': status,
        'priority': priority,
        'category': category,
        'created_at': created_at,
        'updated_at': updated_at,
        'is_active': str(status).lower() != 'inactive',
        'source_system': source_system,
        'language': 'en',
        'confidence_score': 0.95
    }


def _document(entity_type: str, record: Dict[str, Any], content: str, metadata: Dict[str, Any], keywords: List[str],
              tags: List[str], summary: str) -> Document:
    metadata.update({'keywords': keywords, 'tags': tags, 'summary': summary})
    lines = [line.rstrip() for line in content.strip().splitlines() if line.strip()]
    return Document(id=f'{entity_type}_{record.get("id")}', content='\n'.join(lines), metadata=metadata)


def profile_completion(user: Dict[str, Any]) -> int:
    """Percentage of optional profile fields that are filled in."""
    fields = ('first_name', 'last_name', 'email', 'phone', 'department', 'location', 'bio')
    return round(sum(1 for field in fields if user.get(field)) / len(fields) * 100)


def profit_margin(product: Dict[str, Any]) -> float:
    cost, price = _number(product.get('cost_price')), _number(product.get('price'))
    if not cost or not price:
        return 0.0
    return round((price - cost) / price * 100, 2)


def render_user(user: Dict[str, Any]) -> Document:
    roles = user.get('roles') or []
    status = user.get('status') or 'Active'
    name = f'{user.get("first_name") or ""} {user.get("last_name") or ""}'.strip() or user.get('username', '')
    priority = 'high' if 'admin' in roles else 'medium' if 'manager' in roles else 'low'

    content = f"""
User Profile: {user.get('username', '')}
Full Name: {name}
Email Address: {user.get('email', 'Not provided')}
Contact Information: {user.get('phone') or 'Not provided'}
Role and Permissions: {', '.join(roles) or 'No role assigned'}
Account Status: {status}
Account Creation: {to_display_date(user.get('created_at'))}
Last Login Activity: {to_display_date(user.get('last_login'), 'Never')}
Department: {user.get('department') or 'Not assigned'}
Location: {user.get('location') or 'Not specified'}
Profile Completion: {profile_completion(user)}%
"""
    metadata = _base_metadata('users', user, name, status, priority, user.get('department') or 'General', 'user_management')
    metadata.update({'email': user.get('email'), 'username': user.get('username'), 'roles': roles})

    tags = ['user', 'account'] + _status_tags(status)
    if 'admin' in roles:
        tags += ['admin', 'administrator']
    if 'manager' in roles:
        tags += ['manager', 'management']
    if user.get('department'):
        tags.append(user['department'].lower())

    keywords = _keywords(user.get('username'), user.get('first_name'), user.get('last_name'), user.get('email'), roles,
                         user.get('department'), status, 'user', 'account', 'employee', 'staff')
    summary = (f'{name} is a {status.lower()} user with role {", ".join(roles) or "No role"} '
               f'in the {user.get("department") or "General"} department.')
    return _document('users', user, content, metadata, keywords, tags, summary)


def render_client(client: Dict[str, Any]) -> Document:
    status = client.get('status') or 'Active'
    credit_limit = _number(client.get('credit_limit'))
    priority = 'high' if credit_limit > 10000 else 'medium' if credit_limit > 5000 else 'low'

    content = f"""
Client Profile: {client.get('name', '')}
Contact Information:
  - Email: {client.get('email') or 'Not provided'}
  - Phone: {client.get('phone') or 'Not provided'}
  - Address: {client.get('address') or 'Not provided'}
  - City: {client.get('city') or 'Not specified'}
  - Country: {client.get('country') or 'Not specified'}
Business Details:
  - Industry: {client.get('industry') or 'Not specified'}
  - Tax ID: {client.get('tax_id') or 'Not provided'}
Account Status: {status}
Client Since: {to_display_date(client.get('created_at'))}
Credit Limit: {_money(client.get('credit_limit'))}
Current Balance: {_money(client.get('balance'), '$0.00')}
Payment Terms: {client.get('payment_terms') or 'Standard'}
Notes: {client.get('notes') or 'No additional notes'}
"""
    metadata = _base_metadata('clients', client, client.get('name', ''), status, priority, client.get('industry') or 'General',
                              'client_management')
    metadata.update({'email': client.get('email'), 'city': client.get('city'), 'credit_limit': client.get('credit_limit')})

    tags = ['client', 'customer'] + _status_tags(status)
    if client.get('industry'):
        tags.append(client['industry'].lower())
    if credit_limit:
        tags.append('credit-approved')

    keywords = _keywords(client.get('name'), client.get('email'), client.get('phone'), client.get('city'), client.get('country'),
                         client.get('industry'), status, 'client', 'customer', 'company', 'business')
    summary = (f'{client.get("name", "")} is a {status.lower()} client in the {client.get("industry") or "General"} industry '
               f'with credit limit of {_money(client.get("credit_limit"))}.')
    return _document('clients', client, content, metadata, keywords, tags, summary)


def render_product(product: Dict[str, Any]) -> Document:
    status = product.get('status') or 'Active'
    stock = _number(product.get('stock_quantity'))
    reorder_point = _number(product.get('reorder_point'))
    stock_status = 'In Stock' if stock > 0 else 'Out of Stock'
    priority = 'high' if stock == 0 else 'medium' if stock <= reorder_point else 'low'

    content = f"""
Product Information: {product.get('name', '')}
Product Details:
  - SKU: {product.get('sku') or 'Not set'}
  - Category: {product.get('category') or 'Uncategorized'}
  - Brand: {product.get('brand') or 'Not specified'}
Pricing Information:
  - Cost Price: {_money(product.get('cost_price'))}
  - Selling Price: {_money(product.get('price'))}
  - Profit Margin: {profit_margin(product)}%
Inventory Status:
  - Current Stock: {int(stock)} units
  - Stock Status: {stock_status}
  - Reorder Point: {product.get('reorder_point') if product.get('reorder_point') is not None else 'Not set'}
Product Status: {status}
Date Added: {to_display_date(product.get('created_at'))}
Description: {product.get('description') or 'No description available'}
"""
    metadata = _base_metadata('products', product, product.get('name', ''), status, priority, product.get('category') or 'General',
                              'inventory_management')
    metadata.update({'sku': product.get('sku'), 'stock_quantity': stock, 'price': product.get('price')})

    tags = ['product', 'inventory'] + _status_tags(status)
    tags.append('in-stock' if stock > 0 else 'out-of-stock')
    if 0 < stock <= reorder_point:
        tags.append('low-stock')
    if product.get('category'):
        tags.append(product['category'].lower())

    keywords = _keywords(product.get('name'), product.get('sku'), product.get('category'), product.get('brand'), status, 'product',
                         'item', 'inventory', 'stock')
    summary = (f'{product.get("name", "")} is a {product.get("category") or "general"} product that costs '
               f'{_money(product.get("price"))} and is currently {stock_status.lower()}.')
    return _document('products', product, content, metadata, keywords, tags, summary)


def render_supplier(supplier: Dict[str, Any]) -> Document:
    status = supplier.get('status') or 'Active'
    credit_limit = _number(supplier.get('credit_limit'))
    priority = 'high' if credit_limit > 10000 else 'medium' if credit_limit > 5000 else 'low'

    content = f"""
Supplier Profile: {supplier.get('name', '')}
Contact Information:
  - Contact Person: {supplier.get('contact_person') or 'Not specified'}
  - Email: {supplier.get('email') or 'Not provided'}
  - Phone: {supplier.get('phone') or 'Not provided'}
  - Address: {supplier.get('address') or 'Not provided'}
Business Details:
  - Industry: {supplier.get('industry') or 'Not specified'}
  - Tax ID: {supplier.get('tax_id') or 'Not provided'}
  - Website: {supplier.get('website') or 'Not provided'}
Account Status: {status}
Supplier Since: {to_display_date(supplier.get('created_at'))}
Payment Terms: {supplier.get('payment_terms') or 'Standard'}
Notes: {supplier.get('notes') or 'No additional notes'}
"""
    metadata = _base_metadata('suppliers', supplier, supplier.get('name', ''), status, priority,
                              supplier.get('industry') or 'General', 'purchasing')
    metadata.update({'email': supplier.get('email'), 'contact_person': supplier.get('contact_person')})

    tags = ['supplier', 'vendor'] + _status_tags(status)
    if supplier.get('industry'):
        tags.append(supplier['industry'].lower())

    keywords = _keywords(supplier.get('name'), supplier.get('contact_person'), supplier.get('email'), supplier.get('industry'),
                         status, 'supplier', 'vendor', 'provider')
    summary = (f'{supplier.get("name", "")} is a {status.lower()} supplier in the {supplier.get("industry") or "General"} '
               f'industry with contact person {supplier.get("contact_person") or "Not specified"}.')
    return _document('suppliers', supplier, content, metadata, keywords, tags, summary)


def render_purchase(purchase: Dict[str, Any]) -> Document:
    status = purchase.get('status') or 'Pending'
    total = _number(purchase.get('total_amount'))
    priority = 'high' if status == 'Pending' and total > 5000 else 'medium' if status == 'Pending' and total > 1000 else 'low'
    items = purchase.get('items') or []

    content = f"""
Purchase Order: {purchase.get('purchase_number', '')}
Supplier Information:
  - Supplier Name: {purchase.get('supplier_name') or 'Unknown'}
  - Supplier Email: {purchase.get('supplier_email') or 'Not provided'}
Order Details:
  - Order Date: {to_display_date(purchase.get('order_date'), 'Not set')}
  - Expected Delivery: {to_display_date(purchase.get('expected_delivery_date'), 'Not set')}
Financial Information:
  - Subtotal: {_money(purchase.get('subtotal'), '$0.00')}
  - Tax Amount: {_money(purchase.get('tax_amount'), '$0.00')}
  - Total Amount: {_money(total)}
Order Status: {status}
Payment Status: {purchase.get('payment_status') or 'Pending'}
Order Items: {len(items)} items
Notes: {purchase.get('notes') or 'No additional notes'}
"""
    metadata = _base_metadata('purchases', purchase, purchase.get('purchase_number', ''), status, priority, 'Purchasing', 'purchasing')
    metadata.update({'supplier_name': purchase.get('supplier_name'), 'total_amount': total})

    tags = ['purchase', 'order'] + _status_tags(status)
    if purchase.get('payment_status'):
        tags.append(f'payment-{purchase["payment_status"].lower()}')

    keywords = _keywords(purchase.get('purchase_number'), purchase.get('supplier_name'), status, 'purchase', 'order', 'procurement')
    summary = (f'Purchase order {purchase.get("purchase_number", "")} from {purchase.get("supplier_name") or "Unknown"} '
               f'totaling {_money(total)} with status {status}.')
    return _document('purchases', purchase, content, metadata, keywords, tags, summary)


def render_invoice(invoice: Dict[str, Any]) -> Document:
    status = invoice.get('payment_status') or 'Pending'
    total = _number(invoice.get('total_amount'))
    paid = _number(invoice.get('paid_amount'))
    priority = 'high' if status == 'Overdue' else 'medium' if status == 'Pending' and total > 1000 else 'low'
    items = invoice.get('items') or []

    content = f"""
Invoice Details: {invoice.get('invoice_number', '')}
Client Information:
  - Client Name: {invoice.get('client_name') or 'Unknown'}
  - Client Email: {invoice.get('client_email') or 'Not provided'}
Financial Information:
  - Subtotal: {_money(invoice.get('subtotal'), '$0.00')}
  - Tax Amount: {_money(invoice.get('tax_amount'), '$0.00')}
  - Discount: {_money(invoice.get('discount_amount'), '$0.00')}
  - Total Amount: {_money(total)}
  - Amount Paid: {_money(paid)}
  - Balance Due: {_money(total - paid)}
Invoice Timeline:
  - Issue Date: {to_display_date(invoice.get('issue_date'), 'Not set')}
  - Due Date: {to_display_date(invoice.get('due_date'), 'Not set')}
Payment Status: {status}
Invoice Items: {len(items)} items
Notes: {invoice.get('notes') or 'No additional notes'}
"""
    metadata = _base_metadata('invoices', invoice, invoice.get('invoice_number', ''), status, priority, 'Sales', 'sales_management')
    metadata.update({
        'client_name': invoice.get('client_name'),
        'total_amount': total,
        'balance_due': round(total - paid, 2),
        'issue_date': to_iso(invoice.get('issue_date') or '')
    })

    tags = ['invoice', 'sales', 'billing'] + _status_tags(status)
    if total - paid > 0:
        tags.append('outstanding')

    keywords = _keywords(invoice.get('invoice_number'), invoice.get('client_name'), status, 'invoice', 'bill', 'sale', 'payment')
    summary = (f'Invoice {invoice.get("invoice_number", "")} for {invoice.get("client_name") or "Unknown"} '
               f'totaling {_money(total)} with status {status}.')
    return _document('invoices', invoice, content, metadata, keywords, tags, summary)


def render_account(account: Dict[str, Any]) -> Document:
    status = account.get('status') or 'Active'
    balance = _number(account.get('balance'))
    priority = 'high' if balance > 50000 else 'medium' if balance > 10000 else 'low'

    content = f"""
Account: {account.get('name', '')}
Account Details:
  - Account Code: {account.get('code') or 'Not set'}
  - Account Type: {account.get('type') or 'General'}
  - Account Category: {account.get('category') or 'General'}
  - Account Status: {status}
Financial Information:
  - Current Balance: {_money(balance)}
  - Balance Type: {'Credit' if balance >= 0 else 'Debit'}
  - Opening Balance: {_money(account.get('opening_balance'), '$0.00')}
Account Information:
  - Description: {account.get('description') or 'No description'}
  - Currency: {account.get('currency') or 'USD'}
"""
    metadata = _base_metadata('accounts', account, account.get('name', ''), status, priority, account.get('type') or 'General',
                              'accounting')
    metadata.update({'code': account.get('code'), 'account_type': account.get('type'), 'balance': balance})

    tags = ['account', 'accounting', 'balance'] + _status_tags(status)
    if account.get('type'):
        tags.append(str(account['type']).lower())

    keywords = _keywords(account.get('name'), account.get('code'), account.get('type'), status, 'account', 'ledger', 'balance')
    summary = f'{account.get("name", "")} is a {account.get("type") or "general"} account with balance {_money(balance)} and status {status}.'
    return _document('accounts', account, content, metadata, keywords, tags, summary)


def render_journal_entry(entry: Dict[str, Any]) -> Document:
    status = entry.get('status') or 'Posted'
    total = _number(entry.get('total_amount'))
    priority = 'high' if total > 10000 else 'medium' if total > 1000 else 'low'
    lines = entry.get('lines') or []

    line_text = '\n'.join(f'  - {line.get("account_name") or line.get("account_code", "Account")}: '
                          f'debit {_money(line.get("debit"), "$0.00")}, credit {_money(line.get("credit"), "$0.00")}' for line in lines)
    content = f"""
Journal Entry: {entry.get('reference', '')}
Entry Details:
  - Date: {to_display_date(entry.get('date'), 'Not set')}
  - Description: {entry.get('description') or 'No description'}
  - Entry Type: {entry.get('entry_type') or 'General'}
Financial Information:
  - Total Amount: {_money(total)}
Entry Lines:
{line_text or '  - None'}
Entry Status: {status}
Notes: {entry.get('notes') or 'No additional notes'}
"""
    metadata = _base_metadata('journal_entries', entry, entry.get('reference', ''), status, priority, entry.get('entry_type') or 'General',
                              'accounting')
    metadata.update({'reference': entry.get('reference'), 'total_amount': total, 'entry_date': to_iso(entry.get('date') or '')})

    tags = ['journal', 'ledger', 'accounting'] + _status_tags(status)

    keywords = _keywords(entry.get('reference'), entry.get('description'), status, 'journal', 'entry', 'ledger', 'transaction')
    summary = (f'Journal entry {entry.get("reference", "")} for {entry.get("description") or "General"} '
               f'totaling {_money(total)} with status {status}.')
    return _document('journal_entries', entry, content, metadata, keywords, tags, summary)


def render_system_feature(feature: Dict[str, Any]) -> Document:
    status = feature.get('status') or 'Active'
    capabilities = feature.get('capabilities') or []
    priority = 'high' if len(capabilities) > 10 else 'medium' if len(capabilities) > 5 else 'low'

    capability_text = '\n'.join(f'  - {capability}' for capability in capabilities)
    content = f"""
System Feature: {feature.get('name', '')}
Feature Details:
  - Description: {feature.get('description', '')}
  - Feature ID: {feature.get('id')}
  - Status: {status}
Capabilities:
{capability_text}
"""
    metadata = _base_metadata('system_features', feature, feature.get('name', ''), status, priority, 'System', 'system_management')
    metadata['capabilities'] = capabilities

    tags = ['system', 'feature'] + _status_tags(status)
    keywords = _keywords(feature.get('name'), feature.get('id'), [capability.lower() for capability in capabilities], 'feature',
                         'system', 'module')
    summary = (f'{feature.get("name", "")} is a {status.lower()} system feature with {len(capabilities)} capabilities '
               f'for {feature.get("description", "")}.')
    return _document('system_features', feature, content, metadata, keywords, tags, summary)


RENDERERS: Dict[str, Callable[[Dict[str, Any]], Document]] = {
    'users': render_user,
    'clients': render_client,
    'products': render_product,
    'suppliers': render_supplier,
    'purchases': render_purchase,
    'invoices': render_invoice,
    'accounts': render_account,
    'journal_entries': render_journal_entry,
    'system_features': render_system_feature
}

ENTITY_TYPES = tuple(RENDERERS)


def render_record(entity_type: str, record: Dict[str, Any]) -> Document:
    """Render one record of a known entity type.

    Raises:
        KeyError: If the entity type has no renderer
    """
    return RENDERERS[entity_type](record)
