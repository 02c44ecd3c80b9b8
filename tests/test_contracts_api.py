from datetime import date, datetime

from window_workflow import models, workflow
from window_workflow.schemas import ContractCreate


def create_contract(client, headers, order, contract_type="installation_contract", **extra):
    response = client.post(
        "/contracts",
        json={"order_id": order.id, "contract_type": contract_type, **extra},
        headers=headers,
    )
    assert response.status_code == 201, response.text
    return response.json()


def test_contract_lifecycle(client, db, make_user, make_order, headers_for):
    owner = make_user("client")
    order = make_order(client_user=owner)
    manager_headers = headers_for(make_user("manager"))

    contract = create_contract(client, manager_headers, order, file_url="/files/ct.pdf")
    year = datetime.utcnow().year
    assert contract["contract_number"] == f"CT-{year}-000001"
    assert contract["is_signed"] is False
    assert contract["status_display"] == "Pending Signature"
    assert contract["contract_type_display"] == "Installation Contract"

    signed = client.put(f"/contracts/{contract['id']}/sign", headers=headers_for(owner))
    assert signed.status_code == 200
    assert signed.json()["is_signed"] is True
    assert signed.json()["signed_date"] == date.today().isoformat()

    again = client.put(f"/contracts/{contract['id']}/sign", headers=manager_headers)
    assert again.status_code == 400

    events = [e.event_type for e in db.query(models.OrderEvent).filter(models.OrderEvent.order_id == order.id)]
    assert "contract_created" in events
    assert "contract_signed" in events


def test_contract_without_file_is_a_draft(client, make_order, make_user, headers_for):
    contract = create_contract(client, headers_for(make_user("director")), make_order(), contract_type="warranty")
    assert contract["status_display"] == "Draft"


def test_contract_numbers_are_sequential_and_separate_from_orders(db, make_order):
    order = make_order()

    first = workflow.create_contract(db, ContractCreate(order_id=order.id, contract_type="warranty"))
    second = workflow.create_contract(db, ContractCreate(order_id=order.id, contract_type="amendment"))

    assert first.contract_number.endswith("-000001")
    assert second.contract_number.endswith("-000002")
    assert order.order_number.endswith("-000001")
    assert workflow.next_order_number(db).endswith("-000002")


def test_contract_number_restarts_each_year(db):
    assert workflow.next_contract_number(db, year=2025) == "CT-2025-000001"
    assert workflow.next_contract_number(db, year=2026) == "CT-2026-000001"
    assert workflow.next_contract_number(db, year=2025) == "CT-2025-000002"


def test_contract_for_missing_order(client, make_user, headers_for):
    response = client.post(
        "/contracts",
        json={"order_id": "no-such-order", "contract_type": "warranty"},
        headers=headers_for(make_user("manager")),
    )
    assert response.status_code == 404


def test_unknown_contract_type(client, make_order, make_user, headers_for):
    response = client.post(
        "/contracts",
        json={"order_id": make_order().id, "contract_type": "lease"},
        headers=headers_for(make_user("manager")),
    )
    assert response.status_code == 422


def test_supervisor_cannot_create_contracts(client, make_order, make_user, headers_for):
    response = client.post(
        "/contracts",
        json={"order_id": make_order().id, "contract_type": "warranty"},
        headers=headers_for(make_user("supervisor")),
    )
    assert response.status_code == 403


def test_other_client_cannot_see_or_sign(client, make_user, make_order, headers_for):
    order = make_order()
    contract = create_contract(client, headers_for(make_user("manager")), order)
    stranger = headers_for(make_user("client"))

    assert client.get(f"/contracts/{contract['id']}", headers=stranger).status_code == 403
    assert client.get(f"/contracts/order/{order.id}", headers=stranger).status_code == 403
    assert client.put(f"/contracts/{contract['id']}/sign", headers=stranger).status_code == 403


def test_owner_lists_order_contracts(client, make_user, make_order, headers_for):
    owner = make_user("client")
    order = make_order(client_user=owner)
    manager_headers = headers_for(make_user("manager"))
    create_contract(client, manager_headers, order, contract_type="service_agreement")
    create_contract(client, manager_headers, order, contract_type="warranty")

    response = client.get(f"/contracts/order/{order.id}", headers=headers_for(owner))

    assert response.status_code == 200
    assert sorted(c["contract_type"] for c in response.json()) == ["service_agreement", "warranty"]


def test_contracts_for_missing_order(client, make_user, headers_for):
    response = client.get("/contracts/order/no-such-order", headers=headers_for(make_user("manager")))
    assert response.status_code == 404


def test_list_contracts_with_filters(client, make_user, make_order, headers_for):
    headers = headers_for(make_user("manager"))
    order = make_order()
    warranty = create_contract(client, headers, order, contract_type="warranty")
    create_contract(client, headers, order, contract_type="amendment")
    client.put(f"/contracts/{warranty['id']}/sign", headers=headers)

    signed = client.get("/contracts", params={"is_signed": "true"}, headers=headers).json()
    amendments = client.get("/contracts", params={"contract_type": "amendment"}, headers=headers).json()
    by_number = client.get("/contracts", params={"search": warranty["contract_number"]}, headers=headers).json()

    assert [c["id"] for c in signed["contracts"]] == [warranty["id"]]
    assert [c["contract_type"] for c in amendments["contracts"]] == ["amendment"]
    assert by_number["pagination"]["total"] == 1


def test_clients_cannot_list_all_contracts(client, make_user, headers_for):
    assert client.get("/contracts", headers=headers_for(make_user("client"))).status_code == 403


def test_only_unsigned_contracts_can_be_deleted(client, make_user, make_order, headers_for):
    headers = headers_for(make_user("manager"))
    order = make_order()
    draft = create_contract(client, headers, order)
    signed = create_contract(client, headers, order)
    client.put(f"/contracts/{signed['id']}/sign", headers=headers)

    assert client.delete(f"/contracts/{draft['id']}", headers=headers).status_code == 204
    assert client.get(f"/contracts/{draft['id']}", headers=headers).status_code == 404
    response = client.delete(f"/contracts/{signed['id']}", headers=headers)
    assert response.status_code == 400
    assert response.json()["detail"] == "Signed contracts cannot be deleted"


def test_delete_missing_contract(client, make_user, headers_for):
    response = client.delete("/contracts/no-such-contract", headers=headers_for(make_user("director")))
    assert response.status_code == 404