from urllib.parse import parse_qs

prefix = "/vsicurl/https://parc.s3.us-west-2.amazonaws.com/vortex/rgb/"
suffix = "_rgb.tif"


# Copy next to the configuration basename as <basename>.py to enable script mode.
def query_handler(query_string):
    params = parse_qs(query_string)
    return prefix + params["ID"][0] + suffix
