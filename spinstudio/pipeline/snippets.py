"""
Ready-to-paste embed markup for a finished spin video.
"""


def shopify_snippet(video_url: str, product_id: str) -> str:
    return f"""<!-- Shopify 360 Spin Snippet -->
<div class="product-360-container" style="position: relative; width: 100%; max-width: 600px; margin: 0 auto;">
  <video
    muted
    preload="auto"
    playsinline
    loop
    class="video360"
    id="spin-video-{product_id}"
    style="width: 100%; border-radius: 12px; display: block; cursor: crosshair;"
  >
    <source src="{video_url}" type="video/mp4" />
    Your browser does not support the video tag.
  </video>
  <div class="spin-indicator" style="position: absolute; bottom: 10px; right: 10px; background: rgba(0,0,0,0.6); color: white; padding: 4px 8px; border-radius: 4px; font-size: 12px; pointer-events: none;">
    360° View
  </div>
</div>

<script>
  (function() {{
    const vid = document.getElementById('spin-video-{product_id}');
    if (vid) {{
      vid.addEventListener('mouseenter', () => {{
        vid.currentTime = 0;
        vid.play().catch(e => console.log('Autoplay prevented', e));
      }});
      vid.addEventListener('mouseleave', () => {{
        vid.pause();
        vid.currentTime = 0;
      }});
      vid.addEventListener('touchstart', () => vid.play());
      vid.addEventListener('touchend', () => vid.pause());
    }}
  }})();
</script>"""


def tienda_nube_snippet(video_url: str) -> str:
    return f"""<!-- Tienda Nube / Nuvemshop Snippet -->
{{% if product.metafields.spin_video_url %}}
  <div class="cloud-360-viewer">
    <video src="{video_url}" muted playsinline loop class="w-100 rounded"></video>
  </div>
{{% endif %}}

<!-- Add this URL to your product metafields: -->
<!-- Key: spin_video_url -->
<!-- Value: {video_url} -->"""


def generic_embed_snippet(video_url: str, product_id: str) -> str:
    return f"""<!-- Generic 360 Spin Embed -->
<div style="width: 100%; max-width: 600px; margin: 0 auto;">
  <video
    controls
    autoplay
    muted
    loop
    playsinline
    src="{video_url}"
    id="generic-spin-video-{product_id}"
    style="width: 100%; border-radius: 12px; display: block;"
  >
    Your browser does not support the video tag.
  </video>
</div>"""


def all_snippets(video_url: str, product_id: str) -> dict[str, str]:
    return {
        "shopify": shopify_snippet(video_url, product_id),
        "tienda_nube": tienda_nube_snippet(video_url),
        "generic": generic_embed_snippet(video_url, product_id),
    }
