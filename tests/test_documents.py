from documents import build_receipt_pdf, receipt_number, render_qr_data_url, render_qr_png
from models import MembershipEntry


def test_qr_png():
    png = render_qr_png('upi://pay?pa=gym%40upi&am=1.00')
    assert png.startswith(b'\x89PNG')
    assert render_qr_data_url('x').startswith('data:image/png;base64,')


def test_receipt_pdf(payments, make_member):
    member = make_member()
    payments.approve_payment(member.id)
    entry = MembershipEntry.query.filter_by(member_id=member.id).one()

    pdf, filename = build_receipt_pdf(member, entry, 'Star Gym', plan_name='1 Month')

    assert pdf.startswith(b'%PDF')
    assert filename == f"receipt_{receipt_number(member.id, entry.id)}.pdf"
    assert receipt_number(3, 12) == 'RCP-000003-00012'
