import base64
import os

import requests
import streamlit as st

API_BASE = os.getenv("HEIC_RELAY_API_BASE", os.getenv("API_BASE", "http://localhost:8080")).rstrip("/")


def _reset_state():
    for key in [
        "result",
        "error",
    ]:
        if key in st.session_state:
            del st.session_state[key]
    # Bump the uploader key to clear any previously uploaded file widget state
    if "upload_key" in st.session_state:
        st.session_state["upload_key"] += 1
    else:
        st.session_state["upload_key"] = 1


def _decode_data_uri(uri: str) -> bytes:
    _, _, payload = uri.partition(",")
    return base64.b64decode(payload)


def _paste(uploaded_files: list, text: str, event: str) -> dict[str, object] | None:
    files = [
        ("files", (f.name, f.getvalue(), f.type or "application/octet-stream"))
        for f in uploaded_files
    ]
    try:
        # Conversions run one after another server-side, so leave room for several
        resp = requests.post(
            f"{API_BASE}/paste",
            files=files,
            data={"text": text, "event": event},
            timeout=60 * max(1, len(files)),
        )
    except Exception as e:
        st.session_state["error"] = f"Failed to connect to API: {e}"
        return None
    if resp.status_code != 200:
        st.session_state["error"] = f"Paste failed: {resp.status_code} {resp.text}"
        return None
    return resp.json()


def main() -> None:
    st.set_page_config(page_title="HEIC Relay", page_icon="🖼️", layout="centered")
    st.title("🖼️ HEIC Relay")
    st.caption(f"API base: {API_BASE}")

    col1, col2 = st.columns([1, 1])
    with col1:
        if st.button("Restart", type="secondary"):
            _reset_state()
            st.rerun()
    with col2:
        st.write("")

    if "upload_key" not in st.session_state:
        st.session_state["upload_key"] = 0
    text = st.text_area("Comment", value="", key=f"comment-{st.session_state['upload_key']}")
    uploaded = st.file_uploader(
        "Paste or drop images (HEIC files are converted to JPEG)",
        type=["heic", "jpg", "jpeg", "png", "gif"],  # type: ignore[arg-type]
        accept_multiple_files=True,
        key=f"uploader-{st.session_state['upload_key']}",
    )
    event = st.radio("Event", ["paste", "drop"], horizontal=True)

    if uploaded and "result" not in st.session_state and st.button("Send", type="primary"):
        with st.spinner("Converting..."):
            result = _paste(uploaded, text, str(event))
        if result is not None:
            st.session_state["result"] = result
            st.toast("Files delivered", icon="✅")
        else:
            st.error(st.session_state.get("error", "Unknown error"))

    if result := st.session_state.get("result"):
        for message in result.get("errors", []):
            st.warning(message)
        files = result.get("files", [])
        if files:
            st.success(f"{len(files)} file(s) delivered to the page")
        with st.expander("Comment text"):
            st.code(result.get("text", ""), language="markdown")
        for f in files:
            data = _decode_data_uri(f["data"])
            if str(f.get("mimeType", "")).startswith("image/") and f["mimeType"] != "image/heic":
                st.image(data, caption=f["fileName"])
            st.download_button(
                label=f"Download {f['fileName']}",
                data=data,
                file_name=f["fileName"],
                mime=f.get("mimeType") or "application/octet-stream",
                key=f"download-{f['fileName']}",
            )

    if err := st.session_state.get("error"):
        st.error(err)


if __name__ == "__main__":
    main()
