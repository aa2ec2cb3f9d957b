"""
QR rendering for provisioning URIs.
"""
import base64
import io

import qrcode


def render_qr_png_base64(provisioning_uri: str, box_size: int = 10, border: int = 4) -> str:
    """
    Render the provisioning URI as a QR code.

    Args:
        provisioning_uri: otpauth:// URI to encode
        box_size: Pixel size of each module
        border: Quiet-zone width in modules

    Returns:
        Base64-encoded PNG image
    """
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=box_size,
        border=border,
    )
    qr.add_data(provisioning_uri)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")

    buffer = io.BytesIO()
    img.save(buffer, format="PNG")

    return base64.b64encode(buffer.getvalue()).decode("utf-8")
